"""Three-tier safety rating derived from a set of findings.

A site is only "unsafe" when there is evidence of something an attacker can use
right now. Missing best-practice headers are hardening advice and on their own
never make a site unsafe to visit.

Findings are partitioned by title:

* exploitable  - active attack classes, exposed secrets, cleartext transport
* hardening    - missing or weak defensive controls
* informational - fingerprints and trivia, ignored whatever their severity

Unmatched titles fall back on severity: ``critical`` counts as exploitable and
``high`` as hardening. ``info`` findings never count.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .models import SEVERITY_CRITICAL, SEVERITY_HIGH, SEVERITY_INFO, SEVERITY_MEDIUM, Finding

RATING_SAFE = "safe"
RATING_CAUTION = "caution"
RATING_UNSAFE = "unsafe"

EXPLOITABLE_PATTERNS: Tuple[str, ...] = (
    "SQL Injection",
    "Command Injection",
    "XXE Vulnerability",
    "SSRF Vulnerability",
    "Path Traversal",
    "Insecure Deserialization",
    "DOM-Based XSS",
    "Prototype Pollution",
    "Hardcoded API Keys",
    "Authentication Tokens Exposed",
    "Credentials in URL",
    "JWT in URL",
    "Unencrypted HTTP",
    "Mixed Content",
    "CORS Allows Any Origin with Credentials",
)

HARDENING_PATTERNS: Tuple[str, ...] = (
    "Missing HSTS",
    "Missing Content Security Policy",
    "Missing X-Frame-Options",
    "Missing X-Content-Type-Options",
    "Missing Referrer Policy",
    "Missing Permissions Policy",
    "Clickjacking Protection",
    "Missing Cross-Origin",
    "Weak CSP",
    "Weak Crypto",
    "Cache-Control",
    "X-XSS-Protection",
    "DNS Prefetch",
    "Missing security.txt",
    "Report-Only",
    "CSP Contains",
    "Missing Subresource",
    "Open Redirect",
    "Insecure Form Submission",
    "Excessive Permissions",
    "Cookie",
    "Autocomplete",
)

ALWAYS_INFO_PATTERNS: Tuple[str, ...] = (
    "Framework-Required",
    "Server Technology",
    "Server Header",
    "CMS Detected",
    "Robots.txt",
    "Source Maps",
    "HTML Comments",
    "Inline JavaScript",
    "Sensitive File",
    "Outdated JavaScript",
    "Directory Listing",
    "Security.txt",
    "OpenGraph",
    "Meta Refresh",
    "Base Tag",
    "Form Target",
    "Lazy Loading",
    "HTML Lang",
    "Viewport",
    "document.write",
    "Preconnect",
    "Input.*maxlength",
)

FindingLike = Union[Finding, Mapping[str, Any]]


def matches_pattern(title: str, pattern: str) -> bool:
    """Case-insensitive regex match, or substring containment if ``pattern`` is not a valid regex."""
    try:
        return re.search(pattern, title, re.IGNORECASE) is not None
    except re.error:
        return pattern.lower() in title.lower()


def matches_any(title: str, patterns: Iterable[str]) -> bool:
    return any(matches_pattern(title, pattern) for pattern in patterns)


def _title_and_severity(finding: FindingLike) -> Tuple[str, str]:
    if isinstance(finding, Finding):
        return finding.title, finding.severity
    title = finding.get("title") if isinstance(finding, Mapping) else getattr(finding, "title", "")
    severity = finding.get("severity") if isinstance(finding, Mapping) else getattr(finding, "severity", "")
    return str(title or ""), str(severity or "").lower()


class SafetyClassifier:
    def __init__(
        self,
        exploitable: Sequence[str] = EXPLOITABLE_PATTERNS,
        hardening: Sequence[str] = HARDENING_PATTERNS,
        informational: Sequence[str] = ALWAYS_INFO_PATTERNS,
    ) -> None:
        self.exploitable = tuple(exploitable)
        self.hardening = tuple(hardening)
        self.informational = tuple(informational)

    def partition(self, findings: Iterable[FindingLike]) -> Tuple[List[str], List[str]]:
        """Severities of the exploitable and hardening findings, in input order."""
        exploitable: List[str] = []
        hardening: List[str] = []
        for finding in findings:
            title, severity = _title_and_severity(finding)
            if severity == SEVERITY_INFO:
                continue
            if matches_any(title, self.informational):
                continue
            if matches_any(title, self.exploitable):
                exploitable.append(severity)
            elif matches_any(title, self.hardening):
                hardening.append(severity)
            elif severity == SEVERITY_CRITICAL:
                exploitable.append(severity)
            elif severity == SEVERITY_HIGH:
                hardening.append(severity)
        return exploitable, hardening

    def classify(self, findings: Optional[Iterable[FindingLike]]) -> str:
        exploitable, hardening = self.partition(findings or ())

        if SEVERITY_CRITICAL in exploitable:
            return RATING_UNSAFE
        high_exploits = exploitable.count(SEVERITY_HIGH)
        if high_exploits >= 2:
            return RATING_UNSAFE
        if high_exploits == 1:
            return RATING_CAUTION
        if exploitable.count(SEVERITY_MEDIUM) >= 3:
            return RATING_CAUTION
        serious_hardening = sum(1 for severity in hardening if severity in (SEVERITY_CRITICAL, SEVERITY_HIGH))
        if serious_hardening >= 5:
            return RATING_CAUTION
        return RATING_SAFE


DEFAULT_CLASSIFIER = SafetyClassifier()


def get_safety_rating(findings: Optional[Iterable[FindingLike]]) -> str:
    return DEFAULT_CLASSIFIER.classify(findings)
