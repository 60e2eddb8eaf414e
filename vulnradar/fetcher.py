"""Bounded HTTP fetching.

A single GET with a wall-clock deadline and a hard cap on the number of body
bytes held in memory. Used for the primary scan target and for crawl probes.
"""

from __future__ import annotations

import logging
import re
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import requests
from urllib3.exceptions import ProtocolError

from .config import USER_AGENT
from .exceptions import FetchTimeoutError, TargetUnreachableError

logger = logging.getLogger("vulnradar.fetcher")
logger.addHandler(logging.NullHandler())

CHUNK_SIZE = 16 * 1024
CHARSET_PATTERN = re.compile(r"charset\s*=\s*[\"']?([\w.:-]+)", re.I)
DEFAULT_CONNECT_TIMEOUT = 10.0

_STREAM_ERRORS = (
    requests.exceptions.ChunkedEncodingError,
    requests.exceptions.ContentDecodingError,
    requests.exceptions.ConnectionError,
    ProtocolError,
    OSError,
)

_THREAD_LOCAL_SESSION = threading.local()


@dataclass
class FetchResult:
    requested_url: str
    url: str
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    content: bytes = b""
    encoding: Optional[str] = None
    truncated: bool = False

    @property
    def text(self) -> str:
        encoding = self.encoding or "utf-8"
        try:
            return self.content.decode(encoding, errors="replace")
        except LookupError:
            return self.content.decode("utf-8", errors="replace")

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")


def _get_thread_session() -> requests.Session:
    session = getattr(_THREAD_LOCAL_SESSION, "session", None)
    if session is None:
        session = requests.Session()
        _THREAD_LOCAL_SESSION.session = session
    return session


def _collect_headers(resp: requests.Response) -> Dict[str, str]:
    headers: Dict[str, str] = {key.lower(): value for key, value in resp.headers.items()}

    cookie_values: List[str] = []
    raw = getattr(resp, "raw", None)
    header_source = getattr(raw, "headers", None)
    getter = getattr(header_source, "getlist", None) or getattr(header_source, "get_all", None)
    if callable(getter):
        values = getter("Set-Cookie")
        if isinstance(values, (list, tuple)):
            cookie_values.extend(str(value) for value in values)
    if cookie_values:
        headers["set-cookie"] = "\n".join(cookie_values)
    return headers


def _read_bounded(
    resp: requests.Response, url: str, max_bytes: int, deadline: Optional[float] = None
) -> Tuple[bytes, bool]:
    """Read at most ``max_bytes`` decoded bytes from a streaming response.

    The chunk that crosses the budget is cut to the exact remaining size, so
    memory held never exceeds ``max_bytes`` plus one chunk. A stream that
    breaks mid-body ends the read; the bytes captured so far are kept. The
    ``deadline`` (a ``time.monotonic`` value) is checked between chunks.
    """
    chunks: List[bytes] = []
    held = 0
    truncated = False
    try:
        for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
            if deadline is not None and time.monotonic() > deadline:
                break
            if not chunk:
                continue
            remaining = max_bytes - held
            if len(chunk) >= remaining:
                chunks.append(chunk[:remaining])
                held += remaining
                truncated = True
                break
            chunks.append(chunk)
            held += len(chunk)
    except _STREAM_ERRORS as exc:
        logger.debug("Body stream for %s ended after %d bytes: %s", url, held, exc)
    return b"".join(chunks), truncated


def fetch(
    url: str,
    *,
    timeout: float,
    max_bytes: int,
    user_agent: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> FetchResult:
    """GET ``url`` with redirects, keeping at most ``max_bytes`` of decoded body.

    ``timeout`` is an absolute budget for the whole call. Socket operations are
    bounded by it and a watchdog shuts the socket down once it elapses, so a
    slow trickle of bytes cannot hold the call open. ``truncated`` is set when
    the byte cap was reached.

    Raises :class:`TargetUnreachableError` when nothing usable arrived and
    :class:`FetchTimeoutError` when the deadline elapsed.
    """
    if max_bytes < 0:
        raise ValueError("max_bytes must not be negative")
    deadline = time.monotonic() + timeout
    http = session or _get_thread_session()
    headers = {"User-Agent": user_agent or USER_AGENT}

    try:
        resp = http.get(
            url,
            headers=headers,
            timeout=(min(DEFAULT_CONNECT_TIMEOUT, timeout), timeout),
            allow_redirects=True,
            stream=True,
        )
    except requests.exceptions.Timeout as exc:
        logger.warning("Request GET %s timed out: %s", url, exc)
        raise FetchTimeoutError(url, timeout) from exc
    except requests.RequestException as exc:
        logger.warning("Request GET %s failed: %s", url, exc)
        raise TargetUnreachableError(url, _describe_failure(exc)) from exc

    expired = threading.Event()

    def _on_deadline() -> None:
        expired.set()
        if not _shutdown_socket(resp):
            resp.close()

    watchdog = threading.Timer(max(deadline - time.monotonic(), 0.0), _on_deadline)
    watchdog.daemon = True
    watchdog.start()
    try:
        response_headers = _collect_headers(resp)
        if max_bytes == 0:
            content, truncated = b"", True
        else:
            content, truncated = _read_bounded(resp, url, max_bytes, deadline)
        if expired.is_set() or time.monotonic() > deadline:
            logger.warning("Request GET %s exceeded its %ss deadline", url, timeout)
            raise FetchTimeoutError(url, timeout)
        return FetchResult(
            requested_url=url,
            url=resp.url or url,
            status_code=resp.status_code,
            headers=response_headers,
            content=content,
            encoding=_declared_charset(response_headers),
            truncated=truncated,
        )
    finally:
        watchdog.cancel()
        resp.close()


def _shutdown_socket(resp: requests.Response) -> bool:
    """Shut down the connection's socket so a read blocked in another thread returns.

    Closing the response alone leaves a buffered ``recv`` waiting for its full
    chunk. The plain ``socket.socket.shutdown`` is used for TLS sockets too,
    which leaves the SSL object intact for the thread still reading it.
    """
    connection = getattr(resp.raw, "_connection", None)
    sock = getattr(connection, "sock", None)
    if not isinstance(sock, socket.socket):
        return False
    try:
        socket.socket.shutdown(sock, socket.SHUT_RDWR)
    except OSError as exc:
        logger.debug("Socket shutdown for %s failed: %s", resp.url, exc)
        return False
    return True


def _declared_charset(headers: Dict[str, str]) -> Optional[str]:
    """Charset named in the Content-Type header, or None so text decodes as UTF-8."""
    match = CHARSET_PATTERN.search(headers.get("content-type", ""))
    return match.group(1) if match else None


def _describe_failure(exc: requests.RequestException) -> str:
    if isinstance(exc, requests.exceptions.SSLError):
        return "TLS handshake failed"
    if isinstance(exc, requests.exceptions.InvalidURL):
        return "invalid URL"
    if isinstance(exc, requests.exceptions.TooManyRedirects):
        return "too many redirects"
    if isinstance(exc, requests.exceptions.ConnectionError):
        return "Connection failed"
    return exc.__class__.__name__
