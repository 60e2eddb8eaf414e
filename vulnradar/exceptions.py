"""Exceptions surfaced by the scan engine and the API layer.

Every error carries a machine-readable ``error_code`` and the HTTP status the
API should answer with. Only validation errors and an unreachable primary target
are ever raised out of a scan; everything else degrades the result instead.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class VulnRadarError(Exception):
    error_code: str = "VULNRADAR_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            response["details"] = self.details
        return response


# ============ Validation Errors (4xx) ============


class ValidationError(VulnRadarError):
    error_code = "VALIDATION_ERROR"
    status_code = 400


class InvalidUrlError(ValidationError):
    error_code = "INVALID_URL"

    def __init__(self, url: Any, reason: str = "Invalid URL. Must start with http:// or https://"):
        super().__init__(reason, details={"url": url if isinstance(url, str) else None})


class TooManyUrlsError(ValidationError):
    error_code = "TOO_MANY_URLS"

    def __init__(self, count: int, limit: int):
        super().__init__(
            f"Maximum {limit} URLs per bulk scan.", details={"count": count, "limit": limit}
        )


class RateLimitExceededError(VulnRadarError):
    error_code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, message: str, retry_after: Optional[int] = None, **extra: Any):
        details: Dict[str, Any] = dict(extra)
        if retry_after is not None:
            details["retry_after_seconds"] = retry_after
        super().__init__(message, details=details)
        self.retry_after = retry_after


# ============ Scan Errors ============


class ScanError(VulnRadarError):
    error_code = "SCAN_ERROR"


class TargetUnreachableError(ScanError):
    """The primary target could not be fetched (DNS, connection, TLS, timeout)."""

    error_code = "TARGET_UNREACHABLE"
    status_code = 422

    def __init__(self, url: str, reason: str = "Connection failed"):
        super().__init__(
            f"Could not reach the target URL: {reason}. The site may be down, blocking "
            "automated requests, or not publicly accessible.",
            details={"url": url, "reason": reason},
        )
        self.url = url
        self.reason = reason


class FetchTimeoutError(TargetUnreachableError):
    error_code = "FETCH_TIMEOUT"

    def __init__(self, url: str, timeout_seconds: float):
        super().__init__(url, f"timed out after {timeout_seconds:g}s")
        self.details["timeout_seconds"] = timeout_seconds
