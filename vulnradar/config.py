from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

APP_NAME = "VulnRadar"
USER_AGENT = f"{APP_NAME}/1.0 (Security Scanner)"
CRAWLER_USER_AGENT = f"{APP_NAME}/1.0 (Crawler)"
DEMO_USER_AGENT = f"{APP_NAME}/1.0 (Security Scanner - Demo)"

DEFAULT_SCAN_TIMEOUT = 15
DEFAULT_SCAN_MAX_BYTES = 1 * 1024 * 1024
DEFAULT_ASYNC_TIMEOUT = 20
DEFAULT_BULK_ASYNC_TIMEOUT = 15
DEFAULT_DEMO_ASYNC_TIMEOUT = 15

DEFAULT_CRAWL_TIMEOUT = 8
DEFAULT_CRAWL_MAX_BYTES = 512 * 1024
DEFAULT_DISCOVER_MAX_PAGES = 20
DEFAULT_SITE_SCAN_MAX_PAGES = 15
HARD_MAX_PAGES = 50

DEFAULT_BULK_MAX_URLS = 10

DEFAULT_SCAN_RATE_LIMIT = 100
DEFAULT_BULK_RATE_LIMIT = 10
DEFAULT_RATE_WINDOW = 60 * 60
DEFAULT_DEMO_LIMIT = 5
DEFAULT_DEMO_WINDOW = 60 * 15


def _read_limit_from_env(var_name: str, default: int, minimum: int, maximum: Optional[int] = None) -> int:
    value = os.getenv(var_name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    parsed = max(minimum, parsed)
    if maximum is not None:
        parsed = min(maximum, parsed)
    return parsed


def _resolve_disabled_checks() -> FrozenSet[str]:
    raw = os.getenv("VULNRADAR_DISABLE_CHECKS")
    if not raw:
        return frozenset()
    return frozenset(item.strip().lower() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    scan_timeout: int = DEFAULT_SCAN_TIMEOUT
    scan_max_bytes: int = DEFAULT_SCAN_MAX_BYTES
    async_timeout: int = DEFAULT_ASYNC_TIMEOUT
    bulk_async_timeout: int = DEFAULT_BULK_ASYNC_TIMEOUT
    demo_async_timeout: int = DEFAULT_DEMO_ASYNC_TIMEOUT

    crawl_timeout: int = DEFAULT_CRAWL_TIMEOUT
    crawl_max_bytes: int = DEFAULT_CRAWL_MAX_BYTES
    discover_max_pages: int = DEFAULT_DISCOVER_MAX_PAGES
    site_scan_max_pages: int = DEFAULT_SITE_SCAN_MAX_PAGES

    bulk_max_urls: int = DEFAULT_BULK_MAX_URLS

    scan_rate_limit: int = DEFAULT_SCAN_RATE_LIMIT
    bulk_rate_limit: int = DEFAULT_BULK_RATE_LIMIT
    rate_window: int = DEFAULT_RATE_WINDOW
    demo_limit: int = DEFAULT_DEMO_LIMIT
    demo_window: int = DEFAULT_DEMO_WINDOW

    report_folder: Optional[str] = None
    log_level: str = "INFO"
    user_agent: str = USER_AGENT
    disabled_checks: FrozenSet[str] = field(default_factory=frozenset)


def load_settings() -> Settings:
    """Build settings from ``VULNRADAR_*`` environment variables.

    Numeric values are clamped to sane bounds; unparsable values fall back to
    the defaults instead of failing startup.
    """
    return Settings(
        scan_timeout=_read_limit_from_env("VULNRADAR_SCAN_TIMEOUT", DEFAULT_SCAN_TIMEOUT, 1, 120),
        scan_max_bytes=_read_limit_from_env(
            "VULNRADAR_SCAN_MAX_BYTES", DEFAULT_SCAN_MAX_BYTES, 1024, 16 * 1024 * 1024
        ),
        async_timeout=_read_limit_from_env("VULNRADAR_ASYNC_TIMEOUT", DEFAULT_ASYNC_TIMEOUT, 1, 120),
        bulk_async_timeout=_read_limit_from_env(
            "VULNRADAR_BULK_ASYNC_TIMEOUT", DEFAULT_BULK_ASYNC_TIMEOUT, 1, 120
        ),
        demo_async_timeout=_read_limit_from_env(
            "VULNRADAR_DEMO_ASYNC_TIMEOUT", DEFAULT_DEMO_ASYNC_TIMEOUT, 1, 120
        ),
        crawl_timeout=_read_limit_from_env("VULNRADAR_CRAWL_TIMEOUT", DEFAULT_CRAWL_TIMEOUT, 1, 60),
        crawl_max_bytes=_read_limit_from_env(
            "VULNRADAR_CRAWL_MAX_BYTES", DEFAULT_CRAWL_MAX_BYTES, 1024, 4 * 1024 * 1024
        ),
        discover_max_pages=_read_limit_from_env(
            "VULNRADAR_DISCOVER_MAX_PAGES", DEFAULT_DISCOVER_MAX_PAGES, 1, HARD_MAX_PAGES
        ),
        site_scan_max_pages=_read_limit_from_env(
            "VULNRADAR_SITE_SCAN_MAX_PAGES", DEFAULT_SITE_SCAN_MAX_PAGES, 1, HARD_MAX_PAGES
        ),
        bulk_max_urls=_read_limit_from_env("VULNRADAR_BULK_MAX_URLS", DEFAULT_BULK_MAX_URLS, 1, 100),
        scan_rate_limit=_read_limit_from_env("VULNRADAR_SCAN_RATE_LIMIT", DEFAULT_SCAN_RATE_LIMIT, 1),
        bulk_rate_limit=_read_limit_from_env("VULNRADAR_BULK_RATE_LIMIT", DEFAULT_BULK_RATE_LIMIT, 1),
        rate_window=_read_limit_from_env("VULNRADAR_RATE_WINDOW", DEFAULT_RATE_WINDOW, 1),
        demo_limit=_read_limit_from_env("VULNRADAR_DEMO_LIMIT", DEFAULT_DEMO_LIMIT, 1),
        demo_window=_read_limit_from_env("VULNRADAR_DEMO_WINDOW", DEFAULT_DEMO_WINDOW, 1),
        report_folder=os.getenv("VULNRADAR_REPORT_FOLDER") or None,
        log_level=os.getenv("VULNRADAR_LOG_LEVEL", "INFO").upper(),
        user_agent=os.getenv("VULNRADAR_USER_AGENT", USER_AGENT),
        disabled_checks=_resolve_disabled_checks(),
    )
