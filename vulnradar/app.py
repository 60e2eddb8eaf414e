from __future__ import annotations

import json
import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache
from queue import Queue
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .checks import CheckRegistry, build_default_registry
from .config import HARD_MAX_PAGES, Settings, load_settings
from .exceptions import RateLimitExceededError, VulnRadarError
from .persistence import JsonFileSink, NullSink, ScanSink
from .rate_limit import InMemoryRateLimiter, RateLimiter
from .safety_rating import get_safety_rating
from .scanner import ScanPipeline

logger = logging.getLogger("vulnradar.api")


class ScanRequest(BaseModel):
    url: str = Field(..., description="Target URL, including http:// or https://.")


class BulkScanRequest(BaseModel):
    urls: List[Any] = Field(default_factory=list, description="URLs to scan one after another.")


class DiscoverRequest(BaseModel):
    url: str
    max_pages: Optional[int] = Field(
        default=None,
        alias="maxPages",
        ge=1,
        le=HARD_MAX_PAGES,
        description="Maximum number of pages to return.",
    )


class CrawlScanRequest(BaseModel):
    url: str
    urls: Optional[List[Any]] = Field(
        default=None,
        description="Pages chosen from a previous discovery; discovered again when omitted.",
    )


class SafetyRatingRequest(BaseModel):
    findings: List[Dict[str, Any]] = Field(default_factory=list)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


@lru_cache(maxsize=1)
def get_registry() -> CheckRegistry:
    return build_default_registry()


_RATE_LIMITER = InMemoryRateLimiter()


def get_rate_limiter() -> RateLimiter:
    return _RATE_LIMITER


def get_sink(settings: Settings = Depends(get_settings)) -> ScanSink:
    if settings.report_folder:
        return JsonFileSink(settings.report_folder)
    return NullSink()


def get_pipeline(
    settings: Settings = Depends(get_settings),
    registry: CheckRegistry = Depends(get_registry),
    sink: ScanSink = Depends(get_sink),
) -> ScanPipeline:
    return ScanPipeline(registry=registry, settings=settings, sink=sink)


def get_session_identity(x_authenticated_user: Optional[str] = Header(default=None)) -> Optional[str]:
    """Identity of the signed-in user, as forwarded by the authentication layer in front of the API."""
    if x_authenticated_user and x_authenticated_user.strip():
        return x_authenticated_user.strip()
    return None


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()
    return request.client.host if request.client else "unknown"


def _enforce(limiter: RateLimiter, key: str, limit: int, window: int, message: str) -> int:
    decision = limiter.check(key, limit, window)
    if not decision.allowed:
        logger.info("Rate limit hit for %s", key)
        raise RateLimitExceededError(message, retry_after=decision.retry_after_seconds)
    return decision.remaining


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_settings().log_level)
    yield


app = FastAPI(
    title="VulnRadar Scan API",
    description="Passive security scanning: one GET per page, no attack payloads.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(VulnRadarError)
async def handle_vulnradar_error(request: Request, exc: VulnRadarError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimitExceededError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.get("/healthz", tags=["meta"])
def healthcheck():
    return {"status": "ok"}


@app.get("/api/checks", tags=["meta"])
def list_checks(
    settings: Settings = Depends(get_settings),
    registry: CheckRegistry = Depends(get_registry),
):
    return {
        "disabled": sorted(settings.disabled_checks),
        "checks": registry.describe(disabled=settings.disabled_checks),
    }


@app.post("/api/scan", tags=["scan"])
def scan(
    payload: ScanRequest,
    request: Request,
    identity: Optional[str] = Depends(get_session_identity),
    pipeline: ScanPipeline = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    settings = pipeline.settings
    _enforce(
        limiter,
        f"scan:{identity or client_ip(request)}",
        settings.scan_rate_limit,
        settings.rate_window,
        "Scan rate limit reached. Please wait before scanning again.",
    )
    outcome = pipeline.scan_url(payload.url, requester=identity)
    return outcome.to_dict()


@app.post("/api/scan/bulk", tags=["scan"])
def scan_bulk(
    payload: BulkScanRequest,
    request: Request,
    identity: Optional[str] = Depends(get_session_identity),
    pipeline: ScanPipeline = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    settings = pipeline.settings
    _enforce(
        limiter,
        f"bulkscan:{identity or client_ip(request)}",
        settings.bulk_rate_limit,
        settings.rate_window,
        "Bulk scan rate limit reached. Please wait before scanning again.",
    )
    items = pipeline.scan_bulk(payload.urls, requester=identity)
    successful = sum(1 for item in items if item.success)
    return {
        "total": len(items),
        "successful": successful,
        "failed": len(items) - successful,
        "results": [item.to_dict() for item in items],
    }


@app.post("/api/scan/crawl/discover", tags=["crawl"])
def crawl_discover(
    payload: DiscoverRequest,
    request: Request,
    identity: Optional[str] = Depends(get_session_identity),
    pipeline: ScanPipeline = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    settings = pipeline.settings
    _enforce(
        limiter,
        f"crawl-discover:{identity or client_ip(request)}",
        settings.scan_rate_limit,
        settings.rate_window,
        "Discovery rate limit reached. Please wait before trying again.",
    )
    urls = pipeline.discover(payload.url, payload.max_pages)
    return {"urls": urls, "total": len(urls)}


@app.post("/api/scan/crawl", tags=["crawl"])
def crawl_scan(
    payload: CrawlScanRequest,
    request: Request,
    identity: Optional[str] = Depends(get_session_identity),
    pipeline: ScanPipeline = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    settings = pipeline.settings
    _enforce(
        limiter,
        f"crawl:{identity or client_ip(request)}",
        settings.scan_rate_limit,
        settings.rate_window,
        "Crawl rate limit reached. Please wait before scanning again.",
    )
    site = pipeline.scan_site(payload.url, payload.urls, requester=identity)
    return site.to_dict()


@app.get("/api/scan/crawl/stream", tags=["crawl"])
def crawl_stream(
    request: Request,
    url: str = Query(..., description="Seed URL for the deep scan."),
    identity: Optional[str] = Depends(get_session_identity),
    pipeline: ScanPipeline = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    settings = pipeline.settings
    _enforce(
        limiter,
        f"crawl:{identity or client_ip(request)}",
        settings.scan_rate_limit,
        settings.rate_window,
        "Crawl rate limit reached. Please wait before scanning again.",
    )
    event_queue: "Queue[Optional[dict]]" = Queue()

    def progress(event: dict) -> None:
        enriched = {
            **event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        event_queue.put(enriched)

    def worker() -> None:
        try:
            site = pipeline.scan_site(url, requester=identity, progress_callback=progress)
            event_queue.put(
                {
                    "type": "report",
                    "report": site.to_dict(),
                    "progress": 100,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            )
        except VulnRadarError as exc:
            event_queue.put(
                {
                    "type": "error",
                    "message": exc.message,
                    "error_code": exc.error_code,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            )
        except Exception as exc:
            logger.exception("Deep scan of %s failed", url)
            event_queue.put(
                {
                    "type": "error",
                    "message": str(exc),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            )
        finally:
            event_queue.put(None)

    threading.Thread(target=worker, daemon=True).start()

    def event_stream():
        while True:
            item = event_queue.get()
            if item is None:
                break
            yield f"data: {json.dumps(item, ensure_ascii=False)}\n\n"

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.post("/api/demo-scan", tags=["scan"])
def demo_scan(
    payload: ScanRequest,
    request: Request,
    pipeline: ScanPipeline = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    settings = pipeline.settings
    remaining = _enforce(
        limiter,
        f"demo:{client_ip(request)}",
        settings.demo_limit,
        settings.demo_window,
        "Demo limit reached. Sign up for unlimited scans.",
    )
    result = pipeline.scan_demo(payload.url)
    response = result.to_dict()
    response["safetyRating"] = get_safety_rating(result.findings)
    response["remaining"] = remaining
    response["limit"] = settings.demo_limit
    return response


@app.post("/api/safety-rating", tags=["scan"])
def safety_rating(payload: SafetyRatingRequest):
    return {"rating": get_safety_rating(payload.findings)}
