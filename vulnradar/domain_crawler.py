"""Same-site page discovery.

Expands a single seed URL into a list of pages on the same registrable domain
with a breadth-first crawl. Links are harvested with a permissive pattern
instead of a full HTML parser, so malformed or hostile markup degrades to
fewer links rather than errors.

Dedup and scope checks run before a URL is queued, so the frontier never grows
beyond the page cap no matter how many links a page contains.
"""

from __future__ import annotations

import argparse
import json
import logging
import re
import sys
from collections import deque
from typing import Callable, Deque, List, Optional, Set
from urllib.parse import urljoin, urlsplit

from .config import (
    CRAWLER_USER_AGENT,
    DEFAULT_CRAWL_MAX_BYTES,
    DEFAULT_CRAWL_TIMEOUT,
    DEFAULT_DISCOVER_MAX_PAGES,
    HARD_MAX_PAGES,
)
from .exceptions import InvalidUrlError, TargetUnreachableError
from .fetcher import FetchResult, fetch as bounded_fetch

logger = logging.getLogger("vulnradar.crawler")
logger.addHandler(logging.NullHandler())

ALLOWED_SCHEMES = {"http", "https"}
DEFAULT_PORTS = {"http": 80, "https": 443}

# An anchor's attribute span stops at the next "<" as well as ">", so unclosed
# tags cost one pass over the page.
ANCHOR_TAG_PATTERN = re.compile(r"<a\s[^<>]*", re.I)
HREF_ATTRIBUTE_PATTERN = re.compile(r"\shref\s*=\s*[\"']([^\"']*)[\"']", re.I)
SKIP_EXTENSIONS = re.compile(
    r"\.(png|jpg|jpeg|gif|svg|webp|ico|css|js|mjs|cjs|woff2?|ttf|eot|otf|pdf|zip|tar|gz|mp4|mp3|wav"
    r"|ogg|webm|avif|map|xml|rss|atom|json|wasm|txt)$",
    re.I,
)
SKIP_PATH_SEGMENTS = re.compile(
    r"(/_next/|/static/|/assets/|/api/|/favicon|/robots\.txt|/sitemap|/manifest|/sw\.js|/workbox)",
    re.I,
)
INJECTION_CHARS = re.compile(r"[%\[\]{}|\\^`<>]")
ENCODED_INJECTION = re.compile(r"%5[bBdD]|%5[eE]|%7[bBdD]|%3[eE]|%3[cC]")
REJECTED_PREFIXES = ("data:", "mailto:", "tel:", "javascript:")

FetchFn = Callable[..., FetchResult]


def is_valid_url(url: object) -> bool:
    """True for a well-formed absolute ``http``/``https`` URL with a host."""
    if not isinstance(url, str) or not url.strip():
        return False
    try:
        parsed = urlsplit(url.strip())
        parsed.port  # raises ValueError for a malformed port
    except ValueError:
        return False
    return parsed.scheme.lower() in ALLOWED_SCHEMES and bool(parsed.hostname)


def registrable_domain(host: Optional[str]) -> str:
    """Last two dot-separated labels of ``host``, lower-cased."""
    if not host:
        return ""
    labels = host.lower().rstrip(".").split(".")
    return ".".join(labels[-2:])


def normalize_url(url: str) -> str:
    """``scheme://host[:port]`` + path + ``?query``; fragment and default port dropped."""
    parsed = urlsplit(url)
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    port = parsed.port
    netloc = host if port is None or DEFAULT_PORTS.get(scheme) == port else f"{host}:{port}"
    path = parsed.path or "/"
    query = f"?{parsed.query}" if parsed.query else ""
    return f"{scheme}://{netloc}{path}{query}"


def is_clean_href(href: str) -> bool:
    if not href or href.startswith("#"):
        return False
    if INJECTION_CHARS.search(href) and ENCODED_INJECTION.search(href):
        return False
    return not href.lower().startswith(REJECTED_PREFIXES)


def extract_links(html: str) -> List[str]:
    links: List[str] = []
    for tag in ANCHOR_TAG_PATTERN.finditer(html):
        attribute = HREF_ATTRIBUTE_PATTERN.search(tag.group(0))
        if attribute is None:
            continue
        href = attribute.group(1).split("#", 1)[0].strip()
        if href:
            links.append(href)
    return links


class Crawler:
    def __init__(
        self,
        seed_url: str,
        max_pages: int = DEFAULT_DISCOVER_MAX_PAGES,
        per_request_timeout: float = DEFAULT_CRAWL_TIMEOUT,
        *,
        max_bytes: int = DEFAULT_CRAWL_MAX_BYTES,
        fetch: Optional[FetchFn] = None,
    ) -> None:
        if not is_valid_url(seed_url):
            raise InvalidUrlError(seed_url)
        self.seed_url = seed_url.strip()
        self.max_pages = max(1, min(int(max_pages), HARD_MAX_PAGES))
        self.per_request_timeout = per_request_timeout
        self.max_bytes = max_bytes
        self.fetch = fetch or bounded_fetch
        self.base_domain = registrable_domain(urlsplit(self.seed_url).hostname)

        self.visited: Set[str] = {normalize_url(self.seed_url)}
        self.found: List[str] = [self.seed_url]
        self.queue: Deque[str] = deque([self.seed_url])

    def _in_scope(self, url: str) -> bool:
        parsed = urlsplit(url)
        if parsed.scheme.lower() not in ALLOWED_SCHEMES:
            return False
        return registrable_domain(parsed.hostname) == self.base_domain

    def _record(self, normalized: str, *, enqueue: bool) -> bool:
        if normalized in self.visited or len(self.found) >= self.max_pages:
            return False
        self.visited.add(normalized)
        self.found.append(normalized)
        if enqueue:
            self.queue.append(normalized)
        return True

    def _resolve(self, href: str, page_url: str) -> Optional[str]:
        if SKIP_EXTENSIONS.search(href):
            return None
        try:
            resolved = urljoin(page_url, href)
            parsed = urlsplit(resolved)
            parsed.port  # raises ValueError for a malformed port
        except ValueError:
            return None
        if not parsed.hostname or not self._in_scope(resolved):
            return None
        full_path = parsed.path + (f"?{parsed.query}" if parsed.query else "")
        if SKIP_PATH_SEGMENTS.search(full_path) or SKIP_EXTENSIONS.search(parsed.path):
            return None
        return normalize_url(resolved)

    def _probe(self, url: str) -> Optional[FetchResult]:
        try:
            return self.fetch(
                url,
                timeout=self.per_request_timeout,
                max_bytes=self.max_bytes,
                user_agent=CRAWLER_USER_AGENT,
            )
        except TargetUnreachableError as exc:
            logger.debug("Crawl probe for %s failed: %s", url, exc.reason)
        except Exception as exc:
            logger.debug("Crawl probe for %s failed unexpectedly: %s", url, exc)
        return None

    def _visit(self, current_url: str) -> None:
        result = self._probe(current_url)
        if result is None:
            return

        final_url = result.url or current_url
        if not self._in_scope(final_url):
            logger.debug("Dropping %s: redirected off-site to %s", current_url, final_url)
            return
        # The post-redirect page counts as its own node when it is new.
        self._record(normalize_url(final_url), enqueue=False)

        if "text/html" not in result.content_type.lower():
            return

        for href in extract_links(result.text):
            if len(self.found) >= self.max_pages:
                break
            if not is_clean_href(href):
                continue
            normalized = self._resolve(href, final_url)
            if normalized is None:
                continue
            self._record(normalized, enqueue=True)

    def run(self) -> List[str]:
        while self.queue and len(self.found) < self.max_pages:
            self._visit(self.queue.popleft())
        logger.info("Discovered %d page(s) from %s", len(self.found), self.seed_url)
        return list(self.found)


def discover(
    seed_url: str,
    max_pages: int = DEFAULT_DISCOVER_MAX_PAGES,
    per_request_timeout: float = DEFAULT_CRAWL_TIMEOUT,
    *,
    max_bytes: int = DEFAULT_CRAWL_MAX_BYTES,
    fetch: Optional[FetchFn] = None,
) -> List[str]:
    """Breadth-first discovery of same-site pages, seed first.

    Never returns more than ``max_pages`` URLs or two URLs with the same
    normalized form. Probe failures drop that page only; an invalid seed raises
    :class:`InvalidUrlError`.
    """
    crawler = Crawler(
        seed_url,
        max_pages,
        per_request_timeout,
        max_bytes=max_bytes,
        fetch=fetch,
    )
    return crawler.run()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Discover same-site pages starting from a seed URL.")
    parser.add_argument("seed_url", help="Start URL (including scheme)")
    parser.add_argument(
        "--max-pages",
        type=int,
        default=DEFAULT_DISCOVER_MAX_PAGES,
        help=f"Maximum number of pages to return (at most {HARD_MAX_PAGES})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_CRAWL_TIMEOUT,
        help="Per-request timeout in seconds",
    )
    parser.add_argument("--output", type=str, help="Write the URL list as JSON to this file")
    args = parser.parse_args(argv)

    try:
        urls = discover(args.seed_url, args.max_pages, args.timeout)
    except InvalidUrlError as exc:
        print(exc.message, file=sys.stderr)
        return 2

    for url in urls:
        print(url)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            json.dump({"urls": urls}, handle, indent=2, ensure_ascii=False)

    return 0


if __name__ == "__main__":
    sys.exit(main())
