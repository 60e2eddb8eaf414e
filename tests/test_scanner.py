import threading
import time

import pytest

from vulnradar.checks import CheckRegistry
from vulnradar.exceptions import InvalidUrlError, TargetUnreachableError, TooManyUrlsError, ValidationError
from vulnradar.scanner import CheckExecutor, ScanPipeline, merge_findings, reduce_findings

from conftest import FakeFetcher, html_page, make_finding


class RecordingSink:
    def __init__(self):
        self.records = []
        self.recorded = threading.Event()

    def record(self, scan_id, requester, result, *, source="web"):
        self.records.append((scan_id, requester, result, source))
        self.recorded.set()


def _registry(sync=(), async_=()):
    registry = CheckRegistry()
    for index, func in enumerate(sync):
        registry.register_sync(func, name=f"sync-{index}")
    for index, func in enumerate(async_):
        registry.register_async(func, name=f"async-{index}")
    return registry


def _header_check(url, headers, body):
    if "strict-transport-security" not in headers:
        return make_finding("Missing HSTS Header", "medium")
    return None


def _secret_check(url, headers, body):
    if "AKIA" in body:
        return make_finding("Hardcoded API Keys", "critical", "information-disclosure")
    return None


def _info_async(url):
    return [make_finding("DNSSEC Not Enabled", "info", "configuration")]


def test_executor_isolates_failing_checks():
    def broken(url, headers, body):
        raise RuntimeError("bad regex")

    def wrong_type(url, headers, body):
        return {"title": "not a finding"}

    executor = CheckExecutor(_registry(sync=[broken, _header_check, wrong_type]))
    findings = executor.run("https://example.com", {}, "", async_timeout=1)
    assert [finding.title for finding in findings] == ["Missing HSTS Header"]


def test_executor_appends_async_after_sync_and_honours_disabled():
    registry = _registry(sync=[_header_check, _secret_check], async_=[_info_async])
    executor = CheckExecutor(registry, disabled={"sync-1"})
    findings = executor.run("https://example.com", {}, "AKIA", async_timeout=1)
    assert [finding.title for finding in findings] == ["Missing HSTS Header", "DNSSEC Not Enabled"]


def test_async_phase_abandoned_after_deadline():
    release = threading.Event()

    def slow_runner(url, checks):
        release.wait(5)
        return [make_finding("Too Late", "high")]

    executor = CheckExecutor(_registry(sync=[_header_check], async_=[_info_async]), async_runner=slow_runner)
    started = time.monotonic()
    try:
        findings = executor.run("https://example.com", {}, "", async_timeout=0.2)
    finally:
        release.set()
    assert time.monotonic() - started < 2
    assert [finding.title for finding in findings] == ["Missing HSTS Header"]


def test_async_runner_failure_yields_no_async_findings():
    def exploding_runner(url, checks):
        raise RuntimeError("pool broke")

    executor = CheckExecutor(_registry(async_=[_info_async]), async_runner=exploding_runner)
    assert executor.run_async("https://example.com", 1) == []


def test_reduce_orders_by_severity_stably_and_counts():
    findings = [
        make_finding("low-1", "low"),
        make_finding("crit", "critical"),
        make_finding("low-2", "low"),
        make_finding("info", "info"),
        make_finding("high", "high"),
    ]
    ordered, summary = reduce_findings(findings)
    assert [f.title for f in ordered] == ["crit", "high", "low-1", "low-2", "info"]
    assert summary.to_dict() == {"critical": 1, "high": 1, "medium": 0, "low": 2, "info": 1, "total": 5}
    again, again_summary = reduce_findings(ordered)
    assert again == ordered
    assert again_summary == summary


def test_reduce_empty():
    ordered, summary = reduce_findings([])
    assert ordered == ()
    assert summary.total == 0


def test_merge_findings_dedups_by_id():
    shared = make_finding("shared")
    other = make_finding("other")
    assert merge_findings([[shared, other], [shared]]) == [shared, other]


def test_pipeline_rejects_invalid_url_before_fetching(settings, fake_fetcher):
    pipeline = ScanPipeline(_registry(), settings, fake_fetcher)
    with pytest.raises(InvalidUrlError):
        pipeline.run("javascript:alert(1)")
    assert fake_fetcher.calls == []


def test_pipeline_propagates_unreachable_target(settings, fake_fetcher):
    pipeline = ScanPipeline(_registry(), settings, fake_fetcher)
    with pytest.raises(TargetUnreachableError):
        pipeline.run("https://down.example")


def test_pipeline_builds_ordered_result(settings):
    url = "https://example.com"
    fetcher = FakeFetcher({url: html_page(url, "const k = 'AKIA';", {"server": "nginx"})})
    pipeline = ScanPipeline(_registry(sync=[_header_check, _secret_check]), settings, fetcher)
    outcome = pipeline.run(url)
    result = outcome.result
    assert [f.title for f in result.findings] == ["Hardcoded API Keys", "Missing HSTS Header"]
    assert result.summary.total == 2
    assert result.response_headers["server"] == "nginx"
    assert result.duration_ms >= 0
    assert outcome.scan_id is None
    payload = outcome.to_dict()
    assert payload["safetyRating"] == "unsafe"
    assert payload["scannedAt"] == result.scanned_at
    assert fetcher.calls[0]["timeout"] == settings.scan_timeout
    assert fetcher.calls[0]["max_bytes"] == settings.scan_max_bytes


def test_pipeline_records_in_background_for_known_requester(settings):
    url = "https://example.com"
    sink = RecordingSink()
    pipeline = ScanPipeline(_registry(sync=[_header_check]), settings, FakeFetcher({url: html_page(url, "")}), sink)
    outcome = pipeline.scan_url(url, requester="user-1")
    assert sink.recorded.wait(5)
    scan_id, requester, result, source = sink.records[0]
    assert scan_id == outcome.scan_id
    assert requester == "user-1"
    assert result is outcome.result
    assert source == "web"


def test_demo_scan_records_nothing(settings):
    url = "https://example.com"
    sink = RecordingSink()
    fetcher = FakeFetcher({url: html_page(url, "")})
    pipeline = ScanPipeline(_registry(sync=[_header_check]), settings, fetcher, sink)
    result = pipeline.scan_demo(url)
    assert result.summary.total == 1
    assert sink.records == []
    assert "Demo" in fetcher.calls[0]["user_agent"]


def test_bulk_scan_is_sequential_and_preserves_input_order(settings):
    good = "https://good.example"
    fetcher = FakeFetcher({good: html_page(good, "")})
    pipeline = ScanPipeline(_registry(sync=[_header_check]), settings, fetcher)
    items = pipeline.scan_bulk([good, "ftp://nope", "https://down.example", good], requester="user-1")
    assert [item.url for item in items] == [good, "ftp://nope", "https://down.example", good]
    assert [item.success for item in items] == [True, False, False, True]
    assert items[0].summary.total == 1
    assert items[0].scan_id and items[3].scan_id and items[0].scan_id != items[3].scan_id
    assert "Could not reach" in items[2].error
    assert [call["url"] for call in fetcher.calls] == [good, "https://down.example", good]


def test_bulk_scan_limits(settings):
    pipeline = ScanPipeline(_registry(), settings, FakeFetcher())
    with pytest.raises(ValidationError):
        pipeline.scan_bulk([])
    with pytest.raises(TooManyUrlsError):
        pipeline.scan_bulk(["https://example.com"] * (settings.bulk_max_urls + 1))
    with pytest.raises(ValidationError):
        pipeline.scan_bulk(["nope", 42])


def test_site_scan_with_supplied_pages(settings):
    pages = {
        "https://example.com/": html_page("https://example.com/", "", {"server": "nginx"}),
        "https://example.com/keys": html_page("https://example.com/keys", "AKIA"),
    }
    events = []
    pipeline = ScanPipeline(_registry(sync=[_header_check, _secret_check]), settings, FakeFetcher(pages))
    site = pipeline.scan_site(
        "https://example.com/",
        ["https://example.com/", "mailto:x@example.com", "https://example.com/keys", "https://example.com/gone"],
        progress_callback=events.append,
    )
    assert [page.url for page in site.pages] == [
        "https://example.com/",
        "https://example.com/keys",
        "https://example.com/gone",
    ]
    assert site.pages[2].error == "Connection failed"
    assert site.result.summary.total == 3
    assert site.result.findings[0].title == "Hardcoded API Keys"
    assert site.result.response_headers["server"] == "nginx"
    assert [event["type"] for event in events] == ["page", "page", "page"]
    payload = site.to_dict()
    assert payload["crawl"]["pagesScanned"] == 3
    assert payload["crawl"]["pages"][2]["error"] == "Connection failed"


def test_site_scan_discovers_pages_when_none_supplied(settings):
    seed = "https://example.com/"
    pages = {
        seed: html_page(seed, '<a href="/about">about</a>'),
        "https://example.com/about": html_page("https://example.com/about", ""),
    }
    pipeline = ScanPipeline(_registry(sync=[_header_check]), settings, FakeFetcher(pages))
    site = pipeline.scan_site(seed)
    assert [page.url for page in site.pages] == [seed, "https://example.com/about"]
    assert site.pages_discovered == 2


def test_site_scan_survives_broken_progress_callback(settings):
    seed = "https://example.com/"

    def broken(event):
        raise RuntimeError("client went away")

    pipeline = ScanPipeline(_registry(), settings, FakeFetcher({seed: html_page(seed, "")}))
    site = pipeline.scan_site(seed, [seed], progress_callback=broken)
    assert len(site.pages) == 1


def test_site_scan_rejects_invalid_seed(settings):
    pipeline = ScanPipeline(_registry(), settings, FakeFetcher())
    with pytest.raises(InvalidUrlError):
        pipeline.scan_site("example.com")
