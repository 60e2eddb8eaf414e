import pathlib
import sys
from typing import Dict, Optional

import pytest

# Ensure project root is on sys.path so 'import vulnradar' works when pytest runs
# from a different working directory or a single test file is run.
_ROOT = pathlib.Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from vulnradar.config import Settings
from vulnradar.exceptions import TargetUnreachableError
from vulnradar.fetcher import FetchResult
from vulnradar.models import Finding, generate_finding_id


def make_finding(title: str = "Test Finding", severity: str = "medium", category: str = "headers") -> Finding:
    return Finding(
        id=generate_finding_id("test"),
        title=title,
        severity=severity,
        category=category,
        description=f"{title} description",
        evidence="evidence",
    )


def html_page(url: str, body: str, headers: Optional[Dict[str, str]] = None, final_url: Optional[str] = None):
    merged = {"content-type": "text/html; charset=utf-8"}
    merged.update(headers or {})
    return FetchResult(
        requested_url=url,
        url=final_url or url,
        status_code=200,
        headers=merged,
        content=body.encode("utf-8"),
        encoding="utf-8",
    )


class FakeFetcher:
    """Serves canned responses keyed by URL; unknown URLs are unreachable."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.calls = []

    def __call__(self, url, *, timeout, max_bytes, user_agent=None, session=None):
        self.calls.append({"url": url, "timeout": timeout, "max_bytes": max_bytes, "user_agent": user_agent})
        page = self.pages.get(url)
        if page is None:
            raise TargetUnreachableError(url, "Connection failed")
        if isinstance(page, Exception):
            raise page
        return page


@pytest.fixture
def settings():
    return Settings(scan_timeout=2, async_timeout=1, bulk_async_timeout=1, demo_async_timeout=1)


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()
