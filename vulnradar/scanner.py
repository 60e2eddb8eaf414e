"""Scan orchestration.

One scan is: fetch the target once (bounded in time and size), run every
enabled detector against the captured response, order the findings by severity
and hand the result to a persistence sink. Only an invalid URL or an unreachable
target fails a scan; a broken detector or slow network check only loses its own
findings.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .async_checks import run_async_checks
from .checks import CheckRegistry, build_default_registry
from .config import DEMO_USER_AGENT, HARD_MAX_PAGES, Settings, load_settings
from .domain_crawler import discover, is_valid_url
from .exceptions import InvalidUrlError, TargetUnreachableError, TooManyUrlsError, ValidationError
from .fetcher import FetchResult, fetch
from .models import Finding, ScanResult, ScanSummary
from .persistence import NullSink, ScanSink, generate_scan_id, record_in_background
from .safety_rating import get_safety_rating

__all__ = [
    "BulkItem",
    "CheckExecutor",
    "PageScan",
    "ScanOutcome",
    "ScanPipeline",
    "SiteScan",
    "is_valid_url",
    "merge_findings",
    "reduce_findings",
    "run_scan",
]

logger = logging.getLogger("vulnradar.scanner")
logger.addHandler(logging.NullHandler())

FetchFn = Callable[..., FetchResult]
AsyncRunner = Callable[[str, Sequence[Any]], List[Finding]]
ProgressCallback = Callable[[Dict[str, Any]], None]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _notify_progress(callback: Optional[ProgressCallback], payload: Dict[str, Any]) -> None:
    if not callback:
        return
    try:
        callback(payload)
    except Exception:
        # Progress callbacks are best-effort only.
        pass


class CheckExecutor:
    """Runs the registered detectors against one captured response."""

    def __init__(
        self,
        registry: CheckRegistry,
        disabled: Iterable[str] = (),
        *,
        async_runner: AsyncRunner = run_async_checks,
    ) -> None:
        self.registry = registry
        self.disabled: FrozenSet[str] = frozenset(name.lower() for name in disabled)
        self.async_runner = async_runner

    def run_sync(self, url: str, headers: Dict[str, str], body: str) -> List[Finding]:
        findings: List[Finding] = []
        for entry in self.registry.iter_sync(disabled=self.disabled):
            try:
                result = entry.func(url, headers, body)
            except Exception as exc:
                logger.warning("Check %s failed for %s: %s", entry.name, url, exc)
                continue
            if isinstance(result, Finding):
                findings.append(result)
            elif result is not None:
                logger.warning("Check %s returned %s instead of a finding; ignored", entry.name, type(result).__name__)
        return findings

    def run_async(self, url: str, timeout: float) -> List[Finding]:
        """Network checks raced against ``timeout`` seconds.

        Whatever has not finished when the deadline passes is abandoned and the
        phase contributes nothing. The abandoned work may keep running in the
        background until its own socket timeouts fire.
        """
        checks = list(self.registry.iter_async(disabled=self.disabled))
        if not checks:
            return []

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="vulnradar-async")
        future = executor.submit(self.async_runner, url, checks)
        try:
            findings = future.result(timeout=timeout)
        except FuturesTimeoutError:
            logger.info("Async checks for %s did not finish within %ss; skipping them", url, timeout)
            future.cancel()
            return []
        except Exception as exc:
            logger.warning("Async checks for %s failed: %s", url, exc)
            return []
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return [item for item in findings or [] if isinstance(item, Finding)]

    def run(self, url: str, headers: Dict[str, str], body: str, *, async_timeout: float) -> List[Finding]:
        """Sync findings followed by async findings, in registration order."""
        findings = self.run_sync(url, headers, body)
        findings.extend(self.run_async(url, async_timeout))
        return findings


def reduce_findings(findings: Iterable[Finding]) -> Tuple[Tuple[Finding, ...], ScanSummary]:
    """Order by severity (critical first, stable within a severity) and count."""
    ordered = tuple(sorted(findings, key=lambda finding: finding.rank))
    return ordered, ScanSummary.from_findings(ordered)


def merge_findings(groups: Iterable[Iterable[Finding]]) -> List[Finding]:
    """Concatenate finding groups, keeping the first occurrence of each id."""
    seen = set()
    merged: List[Finding] = []
    for group in groups:
        for finding in group:
            if finding.id in seen:
                continue
            seen.add(finding.id)
            merged.append(finding)
    return merged


@dataclass
class ScanOutcome:
    result: ScanResult
    scan_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = self.result.to_dict()
        payload["scanId"] = self.scan_id
        payload["safetyRating"] = get_safety_rating(self.result.findings)
        return payload


@dataclass
class BulkItem:
    url: Any
    success: bool
    scan_id: Optional[str] = None
    summary: Optional[ScanSummary] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"url": self.url, "success": self.success}
        if self.scan_id is not None:
            payload["scanId"] = self.scan_id
        if self.summary is not None:
            payload["summary"] = self.summary.to_dict()
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class PageScan:
    url: str
    findings: Tuple[Finding, ...] = ()
    summary: ScanSummary = field(default_factory=ScanSummary)
    duration_ms: int = 0
    response_headers: Dict[str, str] = field(default_factory=dict)
    scan_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "url": self.url,
            "scanId": self.scan_id,
            "findings": [finding.to_dict() for finding in self.findings],
            "findingsCount": self.summary.total,
            "summary": self.summary.to_dict(),
            "duration": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class SiteScan:
    result: ScanResult
    pages: List[PageScan]
    pages_discovered: int

    @property
    def scan_id(self) -> Optional[str]:
        return self.pages[0].scan_id if self.pages else None

    def to_dict(self) -> Dict[str, Any]:
        payload = self.result.to_dict()
        payload["scanId"] = self.scan_id
        payload["safetyRating"] = get_safety_rating(self.result.findings)
        payload["crawl"] = {
            "pagesDiscovered": self.pages_discovered,
            "pagesScanned": len(self.pages),
            "pages": [page.to_dict() for page in self.pages],
        }
        return payload


class ScanPipeline:
    def __init__(
        self,
        registry: Optional[CheckRegistry] = None,
        settings: Optional[Settings] = None,
        fetcher: Optional[FetchFn] = None,
        sink: Optional[ScanSink] = None,
        *,
        async_runner: AsyncRunner = run_async_checks,
    ) -> None:
        self.registry = registry or build_default_registry()
        self.settings = settings or load_settings()
        self.fetcher = fetcher or fetch
        self.sink = sink or NullSink()
        self.executor = CheckExecutor(self.registry, self.settings.disabled_checks, async_runner=async_runner)

    def _fetch(self, url: str, user_agent: Optional[str]) -> FetchResult:
        try:
            return self.fetcher(
                url,
                timeout=self.settings.scan_timeout,
                max_bytes=self.settings.scan_max_bytes,
                user_agent=user_agent or self.settings.user_agent,
            )
        except TargetUnreachableError as exc:
            logger.warning("Target %s unreachable: %s", url, exc.reason)
            raise

    def run(
        self,
        url: Any,
        *,
        async_timeout: Optional[float] = None,
        requester: Optional[str] = None,
        user_agent: Optional[str] = None,
        source: str = "web",
    ) -> ScanOutcome:
        """Scan one URL end to end.

        Raises :class:`InvalidUrlError` before any network activity for a bad
        URL and :class:`TargetUnreachableError` when the fetch fails. When a
        ``requester`` is given the result is recorded in the background and the
        returned outcome carries the new scan id.
        """
        if not is_valid_url(url):
            raise InvalidUrlError(url)
        url = url.strip()
        if async_timeout is None:
            async_timeout = self.settings.async_timeout

        started = time.monotonic()
        response = self._fetch(url, user_agent)
        findings = self.executor.run(url, response.headers, response.text, async_timeout=async_timeout)
        ordered, summary = reduce_findings(findings)
        result = ScanResult(
            url=url,
            scanned_at=_utc_now(),
            duration_ms=_elapsed_ms(started),
            findings=ordered,
            summary=summary,
            response_headers=dict(response.headers),
        )
        logger.info("Scanned %s in %dms: %d finding(s)", url, result.duration_ms, summary.total)

        scan_id = None
        if requester:
            scan_id = generate_scan_id()
            record_in_background(self.sink, scan_id, requester, result, source=source)
        return ScanOutcome(result=result, scan_id=scan_id)

    def scan_url(self, url: Any, *, requester: Optional[str] = None, source: str = "web") -> ScanOutcome:
        return self.run(url, async_timeout=self.settings.async_timeout, requester=requester, source=source)

    def scan_demo(self, url: Any) -> ScanResult:
        """Anonymous scan: shorter async deadline and nothing is recorded."""
        outcome = self.run(url, async_timeout=self.settings.demo_async_timeout, user_agent=DEMO_USER_AGENT)
        return outcome.result

    def scan_bulk(self, urls: Sequence[Any], *, requester: Optional[str] = None) -> List[BulkItem]:
        """Scan ``urls`` one after another, one item per input in input order.

        Invalid entries are reported as failed items without being scanned.
        """
        if not urls:
            raise ValidationError("Provide an array of URLs.")
        if len(urls) > self.settings.bulk_max_urls:
            raise TooManyUrlsError(len(urls), self.settings.bulk_max_urls)
        if not any(is_valid_url(url) for url in urls):
            raise ValidationError("No valid URLs provided.")

        items: List[BulkItem] = []
        for url in urls:
            if not is_valid_url(url):
                items.append(BulkItem(url=url, success=False, error=InvalidUrlError(url).message))
                continue
            try:
                outcome = self.run(
                    url,
                    async_timeout=self.settings.bulk_async_timeout,
                    requester=requester,
                    source="bulk",
                )
            except TargetUnreachableError as exc:
                items.append(BulkItem(url=url, success=False, error=exc.message))
                continue
            items.append(
                BulkItem(url=url, success=True, scan_id=outcome.scan_id, summary=outcome.result.summary)
            )
        logger.info("Bulk scan finished: %d/%d succeeded", sum(item.success for item in items), len(items))
        return items

    def discover(self, seed_url: Any, max_pages: Optional[int] = None) -> List[str]:
        if not is_valid_url(seed_url):
            raise InvalidUrlError(seed_url)
        return discover(
            seed_url,
            max_pages or self.settings.discover_max_pages,
            self.settings.crawl_timeout,
            max_bytes=self.settings.crawl_max_bytes,
            fetch=self.fetcher,
        )

    def _scan_page(self, page_url: str, requester: Optional[str]) -> PageScan:
        try:
            outcome = self.run(
                page_url,
                async_timeout=self.settings.bulk_async_timeout,
                requester=requester,
                source="deep-crawl",
            )
        except TargetUnreachableError as exc:
            return PageScan(url=page_url, error=exc.reason)
        result = outcome.result
        return PageScan(
            url=page_url,
            findings=result.findings,
            summary=result.summary,
            duration_ms=result.duration_ms,
            response_headers=dict(result.response_headers),
            scan_id=outcome.scan_id,
        )

    def scan_site(
        self,
        seed_url: Any,
        urls: Optional[Sequence[Any]] = None,
        *,
        requester: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> SiteScan:
        """Deep scan: scan each discovered (or supplied) page and merge the findings.

        Supplied ``urls`` are filtered to valid http(s) URLs and capped; without
        them the pages are discovered from ``seed_url``. Unreachable pages are
        recorded with an error and contribute no findings.
        """
        if not is_valid_url(seed_url):
            raise InvalidUrlError(seed_url)
        seed_url = seed_url.strip()
        started = time.monotonic()

        cap = min(self.settings.site_scan_max_pages, HARD_MAX_PAGES)
        if urls:
            pages = [url.strip() for url in urls if is_valid_url(url)][:cap]
        else:
            _notify_progress(progress_callback, {"type": "phase", "phase": "crawl", "progress": 5})
            pages = self.discover(seed_url, cap)

        page_scans: List[PageScan] = []
        for index, page_url in enumerate(pages, start=1):
            page = self._scan_page(page_url, requester)
            page_scans.append(page)
            _notify_progress(
                progress_callback,
                {
                    "type": "page",
                    "url": page.url,
                    "index": index,
                    "total": len(pages),
                    "findings": page.summary.total,
                    "error": page.error,
                    "progress": round(5 + 90 * index / max(1, len(pages)), 1),
                },
            )

        ordered, summary = reduce_findings(merge_findings(page.findings for page in page_scans))
        result = ScanResult(
            url=seed_url,
            scanned_at=_utc_now(),
            duration_ms=_elapsed_ms(started),
            findings=ordered,
            summary=summary,
            response_headers=dict(page_scans[0].response_headers) if page_scans else {},
        )
        logger.info("Deep scan of %s covered %d page(s): %d finding(s)", seed_url, len(page_scans), summary.total)
        return SiteScan(result=result, pages=page_scans, pages_discovered=len(pages))


def run_scan(target_url: str, *, crawl: bool = False, max_pages: Optional[int] = None) -> Dict[str, Any]:
    """Scan with default settings and return the JSON-ready report."""
    settings = load_settings()
    if max_pages is not None:
        settings = replace(settings, site_scan_max_pages=max(1, min(max_pages, HARD_MAX_PAGES)))
    pipeline = ScanPipeline(settings=settings)
    if crawl:
        return pipeline.scan_site(target_url).to_dict()
    return pipeline.scan_url(target_url).to_dict()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="VulnRadar passive web security scanner")
    parser.add_argument("--url", "-u", required=True, help="Target URL (including scheme).")
    parser.add_argument(
        "--output",
        "-o",
        default="report.json",
        help="File the JSON report is written to.",
    )
    parser.add_argument("--crawl", action="store_true", help="Discover same-site pages and scan each of them.")
    parser.add_argument(
        "--max-pages",
        type=int,
        default=None,
        help=f"Maximum number of pages for --crawl (at most {HARD_MAX_PAGES}).",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=load_settings().log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        report = run_scan(args.url, crawl=args.crawl, max_pages=args.max_pages)
    except InvalidUrlError as exc:
        print(exc.message, file=sys.stderr)
        return 2
    except TargetUnreachableError as exc:
        print(exc.message, file=sys.stderr)
        return 1

    with open(args.output, "w", encoding="utf-8") as handle:
        json.dump(report, handle, ensure_ascii=False, indent=2)
    print(f"Report written to {args.output} ({report['summary']['total']} findings, {report['safetyRating']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
