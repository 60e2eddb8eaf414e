import json

import pytest
from fastapi.testclient import TestClient

import vulnradar.app as api_module
from vulnradar.app import app, client_ip, get_pipeline, get_rate_limiter, get_settings
from vulnradar.checks import CheckRegistry
from vulnradar.config import Settings
from vulnradar.rate_limit import InMemoryRateLimiter
from vulnradar.scanner import ScanPipeline

from conftest import FakeFetcher, html_page, make_finding

TARGET = "https://example.com/"


def _hsts(url, headers, body):
    if "strict-transport-security" not in headers:
        return make_finding("Missing HSTS Header", "medium")
    return None


@pytest.fixture
def api():
    registry = CheckRegistry()
    registry.register_sync(_hsts, name="hsts-missing")
    settings = Settings(async_timeout=1, bulk_async_timeout=1, demo_async_timeout=1, demo_limit=2, bulk_max_urls=3)
    fetcher = FakeFetcher(
        {
            TARGET: html_page(TARGET, '<a href="/about">about</a>'),
            "https://example.com/about": html_page("https://example.com/about", ""),
        }
    )
    pipeline = ScanPipeline(registry, settings, fetcher)
    limiter = InMemoryRateLimiter()
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_healthz(api):
    assert api.get("/healthz").json() == {"status": "ok"}


def test_list_checks_describes_registry():
    with TestClient(app) as client:
        body = client.get("/api/checks").json()
    names = [item["name"] for item in body["checks"]["sync"]]
    assert "hsts-missing" in names
    assert any(item["name"] == "tls-certificate" for item in body["checks"]["async"])


def test_scan_returns_result_with_rating(api):
    response = api.post("/api/scan", json={"url": TARGET}, headers={"X-Authenticated-User": "user-1"})
    assert response.status_code == 200
    body = response.json()
    assert body["url"] == TARGET
    assert body["summary"]["total"] == 1
    assert body["findings"][0]["title"] == "Missing HSTS Header"
    assert body["safetyRating"] == "safe"
    assert body["scanId"]


def test_scan_invalid_url_is_400(api):
    response = api.post("/api/scan", json={"url": "ftp://example.com"})
    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_URL"


def test_scan_unreachable_is_422(api):
    response = api.post("/api/scan", json={"url": "https://down.example"})
    assert response.status_code == 422
    body = response.json()
    assert body["error_code"] == "TARGET_UNREACHABLE"
    assert body["details"]["url"] == "https://down.example"


def test_bulk_scan_summary(api):
    response = api.post("/api/scan/bulk", json={"urls": [TARGET, "nope", "https://down.example"]})
    assert response.status_code == 200
    body = response.json()
    assert (body["total"], body["successful"], body["failed"]) == (3, 1, 2)
    assert [item["url"] for item in body["results"]] == [TARGET, "nope", "https://down.example"]


def test_bulk_scan_too_many_urls(api):
    response = api.post("/api/scan/bulk", json={"urls": [TARGET] * 4})
    assert response.status_code == 400
    assert response.json()["error_code"] == "TOO_MANY_URLS"


def test_crawl_discover(api):
    response = api.post("/api/scan/crawl/discover", json={"url": TARGET, "maxPages": 5})
    assert response.json()["urls"] == [TARGET, "https://example.com/about"]


def test_crawl_discover_is_rate_limited(api):
    pipeline = ScanPipeline(CheckRegistry(), Settings(scan_rate_limit=1), FakeFetcher({TARGET: html_page(TARGET, "")}))
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    headers = {"X-Authenticated-User": "user-9"}
    assert api.post("/api/scan/crawl/discover", json={"url": TARGET}, headers=headers).status_code == 200
    refused = api.post("/api/scan/crawl/discover", json={"url": TARGET}, headers=headers)
    assert refused.status_code == 429
    assert refused.json()["error_code"] == "RATE_LIMIT_EXCEEDED"


def test_crawl_scan_merges_pages(api):
    response = api.post("/api/scan/crawl", json={"url": TARGET})
    body = response.json()
    assert body["summary"]["total"] == 2
    assert body["crawl"]["pagesScanned"] == 2
    assert [page["url"] for page in body["crawl"]["pages"]] == [TARGET, "https://example.com/about"]


def test_crawl_stream_emits_pages_then_report(api):
    with api.stream("GET", "/api/scan/crawl/stream", params={"url": TARGET}) as response:
        assert response.headers["content-type"].startswith("text/event-stream")
        events = [
            json.loads(line[len("data: "):])
            for line in response.iter_lines()
            if line.startswith("data: ")
        ]
    types = [event["type"] for event in events]
    assert types[-1] == "report"
    assert types.count("page") == 2
    assert events[-1]["report"]["crawl"]["pagesScanned"] == 2


def test_crawl_stream_reports_invalid_seed_as_error_event(api):
    with api.stream("GET", "/api/scan/crawl/stream", params={"url": "nope"}) as response:
        events = [json.loads(line[6:]) for line in response.iter_lines() if line.startswith("data: ")]
    assert events[-1]["type"] == "error"
    assert events[-1]["error_code"] == "INVALID_URL"


def test_demo_scan_is_limited_per_ip(api):
    headers = {"X-Forwarded-For": "203.0.113.9, 10.0.0.1"}
    first = api.post("/api/demo-scan", json={"url": TARGET}, headers=headers).json()
    second = api.post("/api/demo-scan", json={"url": TARGET}, headers=headers).json()
    assert (first["remaining"], second["remaining"]) == (1, 0)
    assert first["limit"] == 2
    refused = api.post("/api/demo-scan", json={"url": TARGET}, headers=headers)
    assert refused.status_code == 429
    assert refused.json()["error_code"] == "RATE_LIMIT_EXCEEDED"
    assert int(refused.headers["retry-after"]) > 0
    other_ip = api.post("/api/demo-scan", json={"url": TARGET}, headers={"X-Real-IP": "198.51.100.1"})
    assert other_ip.status_code == 200


def test_safety_rating_endpoint(api):
    findings = [{"title": "JWT in URL", "severity": "high"}, {"title": "Credentials in URL", "severity": "high"}]
    assert api.post("/api/safety-rating", json={"findings": findings}).json() == {"rating": "unsafe"}
    assert api.post("/api/safety-rating", json={"findings": []}).json() == {"rating": "safe"}


def test_client_ip_header_precedence():
    class FakeRequest:
        def __init__(self, headers, host="127.0.0.9"):
            self.headers = headers
            self.client = type("Client", (), {"host": host})()

    assert client_ip(FakeRequest({"x-forwarded-for": "1.1.1.1, 2.2.2.2", "x-real-ip": "3.3.3.3"})) == "1.1.1.1"
    assert client_ip(FakeRequest({"x-real-ip": "3.3.3.3", "cf-connecting-ip": "4.4.4.4"})) == "3.3.3.3"
    assert client_ip(FakeRequest({"cf-connecting-ip": "4.4.4.4"})) == "4.4.4.4"
    assert client_ip(FakeRequest({})) == "127.0.0.9"


def test_logging_is_configured_when_the_app_starts(monkeypatch):
    levels = []
    monkeypatch.setattr(api_module, "configure_logging", levels.append)
    with TestClient(app):
        assert levels == [get_settings().log_level]
