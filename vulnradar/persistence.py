"""Recording finished scans.

The engine only hands results to a sink; where and how they are stored is up to
the sink. Recording happens on a background thread so it never delays the
response, and a failing sink never fails the scan.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Protocol

from .models import ScanResult

logger = logging.getLogger("vulnradar.persistence")
logger.addHandler(logging.NullHandler())


def generate_scan_id() -> str:
    return secrets.token_hex(12)


class ScanSink(Protocol):
    def record(self, scan_id: str, requester: str, result: ScanResult, *, source: str = "web") -> None:
        ...


class NullSink:
    def record(self, scan_id: str, requester: str, result: ScanResult, *, source: str = "web") -> None:
        return None


class JsonFileSink:
    """Writes one ``<scan_id>.json`` document per scan into ``folder``."""

    def __init__(self, folder: str) -> None:
        self.folder = folder

    def path_for(self, scan_id: str) -> str:
        return os.path.join(self.folder, f"{scan_id}.json")

    def record(self, scan_id: str, requester: str, result: ScanResult, *, source: str = "web") -> None:
        os.makedirs(self.folder, exist_ok=True)
        document: Dict[str, Any] = {
            "scanId": scan_id,
            "requester": requester,
            "source": source,
            "recordedAt": datetime.now(timezone.utc).isoformat(),
            "result": result.to_dict(),
        }
        with open(self.path_for(scan_id), "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2, ensure_ascii=False)


def _record_safely(sink: ScanSink, scan_id: str, requester: str, result: ScanResult, source: str) -> None:
    try:
        sink.record(scan_id, requester, result, source=source)
    except Exception as exc:
        logger.error("Failed to record scan %s for %s: %s", scan_id, result.url, exc)


def record_in_background(
    sink: ScanSink,
    scan_id: str,
    requester: str,
    result: ScanResult,
    *,
    source: str = "web",
) -> threading.Thread:
    worker = threading.Thread(
        target=_record_safely,
        args=(sink, scan_id, requester, result, source),
        name=f"vulnradar-record-{scan_id[:8]}",
        daemon=True,
    )
    worker.start()
    return worker
