import json
import logging

from vulnradar.models import ScanResult, ScanSummary
from vulnradar.persistence import JsonFileSink, NullSink, generate_scan_id, record_in_background

from conftest import make_finding


def _result():
    findings = (make_finding("Missing HSTS Header"),)
    return ScanResult(
        url="https://example.com",
        scanned_at="2026-01-01T00:00:00+00:00",
        duration_ms=12,
        findings=findings,
        summary=ScanSummary.from_findings(findings),
        response_headers={"server": "nginx"},
    )


def test_scan_ids_are_random_hex():
    first, second = generate_scan_id(), generate_scan_id()
    assert first != second
    assert len(first) == 24
    int(first, 16)


def test_json_file_sink_writes_one_document_per_scan(tmp_path):
    sink = JsonFileSink(str(tmp_path / "reports"))
    sink.record("abc123", "user-7", _result(), source="bulk")
    with open(sink.path_for("abc123"), encoding="utf-8") as handle:
        document = json.load(handle)
    assert document["scanId"] == "abc123"
    assert document["requester"] == "user-7"
    assert document["source"] == "bulk"
    assert document["result"]["summary"]["total"] == 1
    assert document["result"]["findings"][0]["title"] == "Missing HSTS Header"


def test_background_record_writes_without_blocking(tmp_path):
    sink = JsonFileSink(str(tmp_path))
    worker = record_in_background(sink, "scan-1", "user-1", _result())
    worker.join(timeout=5)
    assert worker.daemon
    with open(sink.path_for("scan-1"), encoding="utf-8") as handle:
        assert json.load(handle)["source"] == "web"


def test_background_record_logs_sink_failure(caplog):
    class BrokenSink:
        def record(self, scan_id, requester, result, *, source="web"):
            raise OSError("disk full")

    with caplog.at_level(logging.ERROR, logger="vulnradar.persistence"):
        worker = record_in_background(BrokenSink(), "scan-2", "user-1", _result())
        worker.join(timeout=5)
    assert "disk full" in caplog.text


def test_null_sink_accepts_everything():
    assert NullSink().record("id", "who", _result()) is None
