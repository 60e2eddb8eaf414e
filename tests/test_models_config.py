import pytest

from vulnradar.config import DEFAULT_SCAN_TIMEOUT, HARD_MAX_PAGES, load_settings
from vulnradar.exceptions import FetchTimeoutError, RateLimitExceededError, TooManyUrlsError
from vulnradar.models import Finding, ScanResult, ScanSummary, generate_finding_id

from conftest import make_finding


def test_finding_rejects_unknown_severity_and_category():
    with pytest.raises(ValueError):
        make_finding(severity="urgent")
    with pytest.raises(ValueError):
        make_finding(category="misc")


def test_finding_dict_form_is_camel_case():
    payload = make_finding("Missing HSTS Header", "medium").to_dict()
    assert {"riskImpact", "fixSteps", "codeExamples"} <= set(payload)
    assert payload["severity"] == "medium"


def test_finding_ids_are_unique():
    assert len({generate_finding_id() for _ in range(500)}) == 500


def test_summary_counts():
    findings = [make_finding(severity="high"), make_finding(severity="high"), make_finding(severity="info")]
    summary = ScanSummary.from_findings(findings)
    assert (summary.high, summary.info, summary.total) == (2, 1, 3)


def test_result_without_findings():
    result = ScanResult("https://example.com", "2026-01-01T00:00:00+00:00", 0, (), ScanSummary())
    assert result.to_dict()["summary"]["total"] == 0
    assert result.to_dict()["responseHeaders"] == {}


def test_load_settings_clamps_and_falls_back(monkeypatch):
    monkeypatch.setenv("VULNRADAR_SCAN_TIMEOUT", "not-a-number")
    monkeypatch.setenv("VULNRADAR_SITE_SCAN_MAX_PAGES", "5000")
    monkeypatch.setenv("VULNRADAR_DISABLE_CHECKS", "Email-Exposure, dnssec ,")
    monkeypatch.setenv("VULNRADAR_LOG_LEVEL", "debug")
    settings = load_settings()
    assert settings.scan_timeout == DEFAULT_SCAN_TIMEOUT
    assert settings.site_scan_max_pages == HARD_MAX_PAGES
    assert settings.disabled_checks == frozenset({"email-exposure", "dnssec"})
    assert settings.log_level == "DEBUG"


def test_error_payloads():
    assert TooManyUrlsError(11, 10).to_dict()["details"] == {"count": 11, "limit": 10}
    limited = RateLimitExceededError("slow down", retry_after=30)
    assert limited.status_code == 429
    assert limited.to_dict()["details"]["retry_after_seconds"] == 30
    timeout = FetchTimeoutError("https://x", 15)
    assert timeout.status_code == 422
    assert "timed out after 15s" in timeout.message


def test_finding_is_immutable():
    finding = make_finding()
    with pytest.raises(Exception):
        finding.title = "changed"  # type: ignore[misc]
    assert isinstance(finding, Finding)
