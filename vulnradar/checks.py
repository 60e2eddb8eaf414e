"""Synchronous detectors and the check registry.

Every synchronous detector is a pure function of ``(url, headers, body)``. The
detection logic only returns an evidence string (or ``None``); the metadata that
turns evidence into a :class:`Finding` lives in a :class:`CheckDefinition` and
is attached by :func:`build_check`.

Headers are expected as a mapping with lower-cased keys, as produced by the
fetcher. Repeated ``Set-Cookie`` values are joined with newlines.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from bs4 import BeautifulSoup

from .async_checks import ASYNC_CHECKS
from .models import (
    CHECK_KIND_ASYNC,
    CHECK_KIND_SYNC,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_INFO,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    CodeExample,
    Finding,
    generate_finding_id,
)

logger = logging.getLogger("vulnradar.checks")
logger.addHandler(logging.NullHandler())


SyncCheck = Callable[[str, Mapping[str, str], str], Optional[Finding]]
AsyncCheck = Callable[[str], List[Finding]]
DetectFn = Callable[[str, Mapping[str, str], str], Optional[str]]

# Server values that only name a CDN/edge and disclose nothing useful.
BENIGN_SERVER_VALUES = {"cloudflare", "vercel"}

FRAMEWORK_MARKERS = ("__NEXT_DATA__", "/_next/", "__nuxt", "/_nuxt/")

SECRET_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("AWS Access Key", re.compile(r"AKIA[0-9A-Z]{16}")),
    ("Google API Key", re.compile(r"AIzaSy[0-9A-Za-z_-]{33}")),
    ("Stripe Secret Key", re.compile(r"sk_live_[0-9a-zA-Z]{24,}")),
    ("Stripe Restricted Key", re.compile(r"rk_live_[0-9a-zA-Z]{24,}")),
    ("GitHub Token", re.compile(r"gh[pousr]_[0-9A-Za-z]{36,}")),
    ("GitLab Token", re.compile(r"glpat-[0-9A-Za-z_-]{20,}")),
    ("Slack Token", re.compile(r"xox[bpras]-[0-9]{10,}-[0-9a-zA-Z-]+")),
    (
        "Slack Webhook",
        re.compile(r"hooks\.slack\.com/services/T[0-9A-Z]{8,}/B[0-9A-Z]{8,}/[0-9A-Za-z]{24}"),
    ),
    ("SendGrid Key", re.compile(r"SG\.[0-9A-Za-z_-]{22}\.[0-9A-Za-z_-]{43}")),
    ("Square Access Token", re.compile(r"sq0atp-[0-9A-Za-z_-]{22}")),
    ("OpenAI Project Key", re.compile(r"sk-proj-[A-Za-z0-9_-]{40,}")),
    ("Anthropic Key", re.compile(r"sk-ant-[A-Za-z0-9_-]{40,}")),
    ("HuggingFace Token", re.compile(r"hf_[A-Za-z0-9]{34,}")),
    ("MongoDB URI", re.compile(r"mongodb(?:\+srv)?://[^\s\"'<>]{10,}")),
    ("PostgreSQL URI", re.compile(r"postgres(?:ql)?://[^\s\"'<>]{10,}")),
    ("Private Key", re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----")),
    (
        "Generic API Key",
        re.compile(r"(?:api[_-]?key|apikey|secret[_-]?key)[\"']?\s*[:=]\s*[\"'][0-9A-Za-z_\-]{24,}[\"']", re.I),
    ),
)

SENSITIVE_FILE_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    (".env", re.compile(r"\.env(?:\b|[\"'])", re.I)),
    (".git/", re.compile(r"\.git/", re.I)),
    (".htaccess", re.compile(r"\.htaccess", re.I)),
    (".htpasswd", re.compile(r"\.htpasswd", re.I)),
    ("wp-config.php", re.compile(r"wp-config\.php", re.I)),
    (".aws/credentials", re.compile(r"\.aws/credentials", re.I)),
    (".ssh/", re.compile(r"\.ssh/", re.I)),
    ("id_rsa", re.compile(r"id_rsa", re.I)),
    (".npmrc", re.compile(r"\.npmrc", re.I)),
    ("docker-compose.yml", re.compile(r"docker-compose\.yml", re.I)),
)

JS_LIBRARY_BASELINES: Tuple[Tuple[str, "re.Pattern[str]", Optional[Tuple[int, ...]]], ...] = (
    ("jQuery < 3.5.0", re.compile(r"jquery[./\-]([123]\.\d+\.\d+)", re.I), (3, 5, 0)),
    ("Angular.js 1.x", re.compile(r"angular(?:\.min)?\.js.{0,100}?(\d+\.\d+\.\d+)", re.I), (2, 0, 0)),
    ("Lodash < 4.17.21", re.compile(r"lodash.{0,100}?(\d+\.\d+\.\d+)", re.I), (4, 17, 21)),
    (
        "Bootstrap < 5.3.0",
        re.compile(r"bootstrap(?:\.min)?\.(?:js|css).{0,100}?(\d+\.\d+\.\d+)", re.I),
        (5, 3, 0),
    ),
    ("Moment.js (deprecated)", re.compile(r"moment(?:\.min)?\.js", re.I), None),
)

DIRECTORY_LISTING_MARKERS = (
    re.compile(r"<title>Index of /[^<]*</title>", re.I),
    re.compile(r"<h1>Index of /[^<]*</h1>", re.I),
    re.compile(r"\[To Parent Directory\]", re.I),
)

COMMENT_KEYWORDS = re.compile(
    r"TODO|FIXME|HACK|password|secret|admin|internal|debug|temporary|remove\s+(?:this|before)|api[_\-]?key",
    re.I,
)

DANGEROUS_INLINE_PATTERNS = (
    ("eval(", re.compile(r"eval\s*\(", re.I)),
    ("document.write(", re.compile(r"document\.write\s*\(", re.I)),
    ("innerHTML=", re.compile(r"\.innerHTML\s*=\s*(?!['\"]<)", re.I)),
    ("Function(", re.compile(r"\bFunction\s*\(")),
    ("setTimeout(string)", re.compile(r"setTimeout\s*\(\s*['\"]", re.I)),
    ("setInterval(string)", re.compile(r"setInterval\s*\(\s*['\"]", re.I)),
)

OPEN_REDIRECT_PATTERNS = (
    re.compile(
        r"[?&](?:redirect|return|next|url|goto|dest|redir|returnTo|continue|forward|target)=[^&\"'\s]+",
        re.I,
    ),
    re.compile(
        r"window\.location\s*=\s*(?:decodeURIComponent|unescape)?\(?\s*(?:new\s+URLSearchParams|location\.(?:search|hash))",
        re.I,
    ),
)

# Match starts are pinned to the beginning of a local part, so a long run of
# address characters without "@" is rejected in one pass.
EMAIL_PATTERN = re.compile(
    r"(?<![a-zA-Z0-9._%+-])[a-zA-Z0-9._%+-]{1,64}@[a-zA-Z0-9.-]{1,253}\.[a-zA-Z]{2,63}(?![a-zA-Z])"
)
EMAIL_IGNORED_SUFFIXES = (".png", ".jpg", ".svg", ".gif", ".webp")
EMAIL_IGNORED_FRAGMENTS = ("@example", "@test", "schema.org", "w3.org", "sentry.io", "@2x", "@3x")

MIXED_CONTENT_PATTERN = re.compile(r"(?:src|href|action)=[\"']http://(?!localhost)([^\"']+)[\"']", re.I)
SCRIPT_OPEN_PATTERN = re.compile(r"<script([^<>]*)>", re.I)
SCRIPT_CLOSE_PATTERN = re.compile(r"</script\s*>", re.I)
COMMENT_OPEN_PATTERN = re.compile(r"<!--")
COMMENT_CLOSE_PATTERN = re.compile(r"-->")
JWT_IN_URL_PATTERN = re.compile(
    r"(?:href|src|action|url)\s*=\s*[\"'][^\"']*(?:\?|&)(?:token|jwt|access_token|auth)=eyJ[A-Za-z0-9_-]+",
    re.I,
)
SOURCE_MAP_PATTERN = re.compile(r"//[#@]\s*sourceMappingURL=\S+|\.js\.map")
GENERATOR_PATTERN = re.compile(
    r"<meta[^<>]*name=[\"']generator[\"'][^<>]*content=[\"']([^\"']+)[\"']", re.I
)
PROTOTYPE_POLLUTION_PATTERNS = (
    re.compile(r"__proto__"),
    re.compile(r"Object\.assign\s*\(\s*{}\s*,\s*(?:req|request|params|query|body)\.", re.I),
    re.compile(r"constructor\s*\[\s*[\"']prototype[\"']\s*\]", re.I),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@lru_cache(maxsize=4)
def _soup(body: str) -> BeautifulSoup:
    # Shared across detectors for the same body; detectors only read from it.
    return BeautifulSoup(body, "html.parser")


def _header(headers: Mapping[str, str], key: str) -> Optional[str]:
    value = headers.get(key)
    if value is None:
        return None
    return str(value)


def _has_header(headers: Mapping[str, str], key: str) -> bool:
    return key in headers


def _is_https(url: str) -> bool:
    return url.lower().startswith("https://")


def _with_more(items: List[str], shown: int = 3) -> str:
    text = "\n".join(items[:shown])
    if len(items) > shown:
        text += f"\n...and {len(items) - shown} more"
    return text


def _delimited_blocks(
    body: str, opening: "re.Pattern[str]", closing: "re.Pattern[str]"
) -> Iterator[Tuple["re.Match[str]", str]]:
    """Yield ``(opening_match, inner_text)`` for each closed block in ``body``.

    An unclosed block ends the scan, so the work done is linear in ``body``.
    """
    position = 0
    while True:
        start = opening.search(body, position)
        if start is None:
            return
        end = closing.search(body, start.end())
        if end is None:
            return
        yield start, body[start.end():end.start()]
        position = end.end()


def _redact(secret: str) -> str:
    if len(secret) <= 12:
        return secret[:4] + "****"
    return secret[:8] + "****" + secret[-4:]


def _version_tuple(text: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in text.split(".") if part.isdigit())


def _has_framework(body: str) -> bool:
    return any(marker in body for marker in FRAMEWORK_MARKERS) or bool(re.search(r"ng-version", body, re.I))


def _rel_values(tag: Any) -> Set[str]:
    rel = tag.get("rel")
    if isinstance(rel, (list, tuple)):
        return {str(item).lower() for item in rel}
    if isinstance(rel, str):
        return {part.lower() for part in rel.split()}
    return set()


# ---------------------------------------------------------------------------
# Detectors: each returns an evidence string or None
# ---------------------------------------------------------------------------


def detect_hsts_missing(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if _has_header(headers, "strict-transport-security"):
        return None
    return "Header 'Strict-Transport-Security' is not present in the response."


def detect_csp_missing(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if _has_header(headers, "content-security-policy"):
        return None
    return "Header 'Content-Security-Policy' is not present in the response."


def detect_clickjacking(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if _header(headers, "x-frame-options"):
        return None
    csp = _header(headers, "content-security-policy") or ""
    if "frame-ancestors" in csp:
        return None
    return "Neither 'X-Frame-Options' header nor CSP 'frame-ancestors' directive is set."


def detect_xcto_missing(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if _has_header(headers, "x-content-type-options"):
        return None
    return "Header 'X-Content-Type-Options' is not present in the response."


def detect_nosniff_incorrect(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    value = _header(headers, "x-content-type-options")
    if value is None or value.strip().lower() == "nosniff":
        return None
    return f"X-Content-Type-Options has unexpected value: '{value}'. Expected 'nosniff'."


def detect_referrer_policy_missing(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if _has_header(headers, "referrer-policy"):
        return None
    return "Header 'Referrer-Policy' is not present in the response."


def detect_permissions_policy_missing(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if _has_header(headers, "permissions-policy") or _has_header(headers, "feature-policy"):
        return None
    return "Neither 'Permissions-Policy' nor 'Feature-Policy' headers are present."


def detect_cache_control_missing(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if _has_header(headers, "cache-control") or _has_header(headers, "pragma"):
        return None
    return "Neither 'Cache-Control' nor 'Pragma' headers are present."


def detect_coop_missing(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if _has_header(headers, "cross-origin-opener-policy"):
        return None
    return "Header 'Cross-Origin-Opener-Policy' is not present."


def detect_weak_csp(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    csp = _header(headers, "content-security-policy")
    if not csp:
        return None
    issues: List[str] = []
    # Frameworks need unsafe-inline/unsafe-eval; only flag them on plain sites.
    if not _has_framework(body):
        if "'unsafe-inline'" in csp and "'nonce-" not in csp and "'strict-dynamic'" not in csp:
            issues.append("unsafe-inline without nonce")
        if "'unsafe-eval'" in csp:
            issues.append("unsafe-eval")
    script_src = re.search(r"script-src[^;]*", csp, re.I)
    if script_src and "data:" in script_src.group(0):
        issues.append("data: in script-src")
    if re.search(r"default-src[^;]*\*", csp):
        issues.append("wildcard in default-src")
    if script_src and "*" in script_src.group(0):
        issues.append("wildcard in script-src")
    if not issues:
        return None
    return "Weak CSP directives: " + ", ".join(issues)


def detect_csp_report_only(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if _has_header(headers, "content-security-policy-report-only") and not _has_header(
        headers, "content-security-policy"
    ):
        return "CSP-Report-Only is set but no enforcing CSP header exists."
    return None


def detect_server_disclosure(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    found: List[str] = []
    server = _header(headers, "server")
    if server and server.strip().lower() not in BENIGN_SERVER_VALUES:
        found.append(f"Server: {server}")
    powered = _header(headers, "x-powered-by")
    if powered:
        found.append(f"X-Powered-By: {powered}")
    aspnet = _header(headers, "x-aspnet-version")
    if aspnet:
        found.append(f"X-AspNet-Version: {aspnet}")
    if not found:
        return None
    return "Technology disclosed: " + ", ".join(found)


def detect_cleartext_http(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if url.lower().startswith("http://"):
        return f"URL uses HTTP: {url}"
    return None


def detect_mixed_content(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if not _is_https(url):
        return None
    refs = ["http://" + match for match in MIXED_CONTENT_PATTERN.findall(body)]
    if not refs:
        return None
    return f"Found {len(refs)} HTTP resource(s) on HTTPS page:\n" + _with_more(refs)


def detect_insecure_form(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if not _is_https(url) or "<form" not in body.lower():
        return None
    insecure = [
        form.get("action")
        for form in _soup(body).find_all("form")
        if str(form.get("action") or "").strip().lower().startswith("http://")
    ]
    if not insecure:
        return None
    return f"Found {len(insecure)} form(s) submitting over HTTP:\n" + _with_more([str(a) for a in insecure])


def detect_cors_wildcard(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if (_header(headers, "access-control-allow-origin") or "").strip() == "*":
        return "Access-Control-Allow-Origin is set to '*'."
    return None


def detect_cors_credentials_wildcard(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    origin = (_header(headers, "access-control-allow-origin") or "").strip()
    credentials = (_header(headers, "access-control-allow-credentials") or "").strip().lower()
    if origin == "*" and credentials == "true":
        return "Access-Control-Allow-Origin: * combined with Access-Control-Allow-Credentials: true"
    return None


def detect_cookie_issues(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    raw = _header(headers, "set-cookie")
    if not raw:
        return None
    issues: List[str] = []
    for cookie in filter(None, (line.strip() for line in raw.split("\n"))):
        lower = cookie.lower()
        name = cookie.split("=", 1)[0].strip()
        if "httponly" not in lower and not name.startswith("__Host-"):
            issues.append(f"{name} missing HttpOnly")
        if "secure" not in lower:
            issues.append(f"{name} missing Secure")
        if "samesite" not in lower:
            issues.append(f"{name} missing SameSite")
    if not issues:
        return None
    return "; ".join(issues[:5])


def detect_sri_missing(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if "<script" not in body.lower():
        return None
    missing = [
        str(tag.get("src"))
        for tag in _soup(body).find_all("script", src=True)
        if re.match(r"https?://", str(tag.get("src")), re.I) and not tag.get("integrity")
    ]
    if not missing:
        return None
    return f"Found {len(missing)} external script(s) without integrity:\n" + _with_more(missing)


def detect_hardcoded_secrets(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    found: List[str] = []
    for name, pattern in SECRET_PATTERNS:
        unique = list(dict.fromkeys(pattern.findall(body)))
        for match in unique[:3]:
            found.append(f"{name}: {_redact(match)}")
        if len(unique) > 3:
            found.append(f"  ...and {len(unique) - 3} more {name} occurrence(s)")
    if not found:
        return None
    return "Potential secrets detected:\n" + "\n".join(found)


def detect_jwt_in_url(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    matches = JWT_IN_URL_PATTERN.findall(body)
    if not matches:
        return None
    return f"Found {len(matches)} URL(s) containing JWT tokens."


def detect_directory_listing(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if any(marker.search(body) for marker in DIRECTORY_LISTING_MARKERS):
        return "Directory listing indicators found in response."
    return None


def detect_sensitive_files(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    found = [label for label, pattern in SENSITIVE_FILE_PATTERNS if pattern.search(body)]
    if not found:
        return None
    return "References to sensitive files: " + ", ".join(found[:5])


def detect_outdated_js(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    found: List[str] = []
    for label, pattern, baseline in JS_LIBRARY_BASELINES:
        match = pattern.search(body)
        if not match:
            continue
        if baseline is None:
            found.append(label)
            continue
        version = _version_tuple(match.group(1))
        if version and version < baseline:
            found.append(f"{label} (found {match.group(1)})")
    if not found:
        return None
    return "Outdated libraries detected: " + "; ".join(found)


def detect_cms(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    found: List[str] = []
    generator = GENERATOR_PATTERN.search(body)
    if generator:
        found.append(f"Generator: {generator.group(1)}")
    powered = _header(headers, "x-powered-by")
    if powered:
        found.append(f"X-Powered-By: {powered}")
    if re.search(r"wp-content|wp-includes", body, re.I):
        found.append("WordPress")
    if re.search(r"drupal\.js|Drupal\.settings", body, re.I):
        found.append("Drupal")
    if re.search(r"/joomla/", body, re.I):
        found.append("Joomla")
    if "__NEXT_DATA__" in body or "/_next/" in body:
        found.append("Next.js")
    if "__nuxt" in body or "/_nuxt/" in body:
        found.append("Nuxt.js")
    if not found:
        return None
    return "Technology fingerprints: " + ", ".join(found)


def detect_source_maps(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    total = len(SOURCE_MAP_PATTERN.findall(body))
    if not total:
        return None
    return f"Found {total} source map reference(s)."


def detect_sensitive_comments(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    found = [
        re.sub(r"[\r\n]", " ", comment[:80]).strip()
        for _, comment in _delimited_blocks(body, COMMENT_OPEN_PATTERN, COMMENT_CLOSE_PATTERN)
        if COMMENT_KEYWORDS.search(comment)
    ]
    if not found:
        return None
    return f"Found {len(found)} comment(s) with sensitive keywords:\n" + _with_more(found)


def detect_dangerous_inline_js(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    found: List[str] = []
    for opening, script in _delimited_blocks(body, SCRIPT_OPEN_PATTERN, SCRIPT_CLOSE_PATTERN):
        if "src=" in opening.group(1).lower():
            continue
        for label, pattern in DANGEROUS_INLINE_PATTERNS:
            if pattern.search(script):
                found.append(label)
                break
    if not found:
        return None
    labels = ", ".join(dict.fromkeys(found))
    return f"Found {len(found)} inline script(s) with dangerous patterns: {labels}"


def detect_open_redirect(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    found: List[str] = []
    for pattern in OPEN_REDIRECT_PATTERNS:
        found.extend(match.group(0) for match in list(pattern.finditer(body))[:3])
    if not found:
        return None
    return f"Found {len(found)} redirect-related pattern(s): " + ", ".join(found[:2])


def detect_email_exposure(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    emails: List[str] = []
    for candidate in EMAIL_PATTERN.findall(body):
        lower = candidate.lower()
        if lower.endswith(EMAIL_IGNORED_SUFFIXES):
            continue
        if any(fragment in lower for fragment in EMAIL_IGNORED_FRAGMENTS):
            continue
        emails.append(candidate)
    unique = list(dict.fromkeys(emails))
    if not unique:
        return None
    return f"Found {len(unique)} email address(es): " + ", ".join(unique[:3])


def detect_reverse_tabnabbing(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if "_blank" not in body:
        return None
    unsafe = [
        tag
        for tag in _soup(body).find_all("a", target=True)
        if str(tag.get("target")).lower() == "_blank" and "noopener" not in _rel_values(tag)
        and "noreferrer" not in _rel_values(tag)
    ]
    # A couple of unprotected links is common and low signal.
    if len(unsafe) <= 2:
        return None
    return f'Found {len(unsafe)} link(s) with target="_blank" missing rel="noopener".'


def detect_autocomplete_sensitive(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    if "<input" not in body.lower():
        return None
    flagged = 0
    for field_tag in _soup(body).find_all("input"):
        input_type = str(field_tag.get("type") or "").lower()
        identity = f"{field_tag.get('name') or ''} {field_tag.get('id') or ''}".lower()
        sensitive = input_type == "password" or any(hint in identity for hint in ("card", "credit", "cc"))
        if sensitive and field_tag.get("autocomplete") is None:
            flagged += 1
    if not flagged:
        return None
    return f"Found {flagged} sensitive field(s) without autocomplete attribute."


def detect_prototype_pollution(url: str, headers: Mapping[str, str], body: str) -> Optional[str]:
    found: List[str] = []
    for pattern in PROTOTYPE_POLLUTION_PATTERNS:
        matches = pattern.findall(body)
        if matches:
            found.append(f"{matches[0][:25]} ({len(matches)})")
    if not found:
        return None
    return "Prototype pollution patterns: " + ", ".join(found)


# ---------------------------------------------------------------------------
# Check definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CheckDefinition:
    name: str
    title: str
    severity: str
    category: str
    description: str
    risk_impact: str = ""
    explanation: str = ""
    fix_steps: Tuple[str, ...] = ()
    code_examples: Tuple[CodeExample, ...] = ()


def build_check(definition: CheckDefinition, detect: DetectFn) -> SyncCheck:
    """Wrap a detect function into the synchronous check interface."""

    def check(url: str, headers: Mapping[str, str], body: str) -> Optional[Finding]:
        evidence = detect(url, headers, body)
        if not evidence:
            return None
        return Finding(
            id=generate_finding_id(),
            title=definition.title,
            severity=definition.severity,
            category=definition.category,
            description=definition.description,
            evidence=evidence,
            risk_impact=definition.risk_impact,
            explanation=definition.explanation,
            fix_steps=definition.fix_steps,
            code_examples=definition.code_examples,
        )

    check.__name__ = definition.name
    check.__qualname__ = definition.name
    setattr(check, "check_kind", CHECK_KIND_SYNC)
    setattr(check, "definition", definition)
    return check


SYNC_CHECK_DEFINITIONS: Tuple[Tuple[CheckDefinition, DetectFn], ...] = (
    (
        CheckDefinition(
            name="hsts-missing",
            title="Missing HSTS Header",
            severity=SEVERITY_MEDIUM,
            category="headers",
            description="The Strict-Transport-Security header is not set.",
            risk_impact="Visitors can be downgraded to HTTP by a network attacker on their first visit.",
            explanation="HSTS tells browsers to only ever contact the site over HTTPS.",
            fix_steps=(
                "Serve the site over HTTPS only.",
                "Add 'Strict-Transport-Security: max-age=31536000; includeSubDomains' to every response.",
            ),
            code_examples=(
                CodeExample(
                    label="nginx",
                    language="nginx",
                    code='add_header Strict-Transport-Security "max-age=31536000; includeSubDomains" always;',
                ),
            ),
        ),
        detect_hsts_missing,
    ),
    (
        CheckDefinition(
            name="csp-missing",
            title="Missing Content Security Policy",
            severity=SEVERITY_MEDIUM,
            category="headers",
            description="No Content-Security-Policy header is present.",
            risk_impact="Injected scripts run without restriction, which makes XSS far easier to exploit.",
            explanation="A CSP limits which sources may provide scripts, styles and frames.",
            fix_steps=(
                "Start with a restrictive policy such as default-src 'self'.",
                "Roll it out in report-only mode first, then enforce it.",
            ),
            code_examples=(
                CodeExample(
                    label="nginx",
                    language="nginx",
                    code="add_header Content-Security-Policy \"default-src 'self'\" always;",
                ),
            ),
        ),
        detect_csp_missing,
    ),
    (
        CheckDefinition(
            name="clickjack-missing",
            title="Missing X-Frame-Options (Clickjacking Protection)",
            severity=SEVERITY_MEDIUM,
            category="headers",
            description="The page can be embedded in frames on other origins.",
            risk_impact="Attackers can overlay the page and trick users into clicking hidden controls.",
            explanation="X-Frame-Options or CSP frame-ancestors controls who may frame the page.",
            fix_steps=("Send 'X-Frame-Options: DENY' or a CSP with frame-ancestors 'self'.",),
        ),
        detect_clickjacking,
    ),
    (
        CheckDefinition(
            name="xcto-missing",
            title="Missing X-Content-Type-Options",
            severity=SEVERITY_LOW,
            category="headers",
            description="The X-Content-Type-Options header is not set.",
            risk_impact="Browsers may MIME-sniff responses and execute content as a different type.",
            fix_steps=("Send 'X-Content-Type-Options: nosniff' on every response.",),
        ),
        detect_xcto_missing,
    ),
    (
        CheckDefinition(
            name="nosniff-incorrect",
            title="Invalid X-Content-Type-Options Value",
            severity=SEVERITY_LOW,
            category="headers",
            description="X-Content-Type-Options is present but not set to 'nosniff'.",
            risk_impact="Browsers ignore unknown values, so MIME sniffing stays enabled.",
            fix_steps=("Set the header value to exactly 'nosniff'.",),
        ),
        detect_nosniff_incorrect,
    ),
    (
        CheckDefinition(
            name="referrer-policy-missing",
            title="Missing Referrer Policy",
            severity=SEVERITY_LOW,
            category="headers",
            description="No Referrer-Policy header is present.",
            risk_impact="Full URLs, including tokens in query strings, may leak to third parties.",
            fix_steps=("Send 'Referrer-Policy: strict-origin-when-cross-origin'.",),
        ),
        detect_referrer_policy_missing,
    ),
    (
        CheckDefinition(
            name="permissions-policy-missing",
            title="Missing Permissions Policy",
            severity=SEVERITY_LOW,
            category="headers",
            description="Neither Permissions-Policy nor Feature-Policy is set.",
            risk_impact="Embedded content can request powerful browser features such as the camera.",
            fix_steps=("Send a Permissions-Policy that disables features the site does not use.",),
        ),
        detect_permissions_policy_missing,
    ),
    (
        CheckDefinition(
            name="cache-control-missing",
            title="Missing Cache-Control Header",
            severity=SEVERITY_LOW,
            category="headers",
            description="The response carries no caching directives.",
            risk_impact="Shared caches may store pages that contain personal data.",
            fix_steps=("Send an explicit Cache-Control header, e.g. 'no-store' for private pages.",),
        ),
        detect_cache_control_missing,
    ),
    (
        CheckDefinition(
            name="coop-missing",
            title="Missing Cross-Origin-Opener-Policy",
            severity=SEVERITY_LOW,
            category="headers",
            description="The Cross-Origin-Opener-Policy header is not set.",
            risk_impact="Cross-origin windows keep a reference to this page, enabling XS-Leaks.",
            fix_steps=("Send 'Cross-Origin-Opener-Policy: same-origin'.",),
        ),
        detect_coop_missing,
    ),
    (
        CheckDefinition(
            name="weak-csp-directives",
            title="Weak CSP Directives",
            severity=SEVERITY_MEDIUM,
            category="headers",
            description="The Content-Security-Policy contains directives that undermine it.",
            risk_impact="Wildcards or unsafe keywords let injected scripts run despite the policy.",
            fix_steps=(
                "Replace 'unsafe-inline' with nonces or hashes.",
                "Remove wildcards and data: from script-src and default-src.",
            ),
        ),
        detect_weak_csp,
    ),
    (
        CheckDefinition(
            name="csp-report-only",
            title="CSP Report-Only Without Enforcement",
            severity=SEVERITY_LOW,
            category="headers",
            description="Only a report-only Content-Security-Policy is deployed.",
            risk_impact="Violations are reported but never blocked.",
            fix_steps=("Promote the report-only policy to an enforcing Content-Security-Policy.",),
        ),
        detect_csp_report_only,
    ),
    (
        CheckDefinition(
            name="server-header-disclosure",
            title="Server Technology Disclosure",
            severity=SEVERITY_LOW,
            category="information-disclosure",
            description="Response headers reveal server software or framework versions.",
            risk_impact="Attackers can look up known vulnerabilities for the disclosed versions.",
            fix_steps=("Remove or genericise the Server and X-Powered-By headers.",),
        ),
        detect_server_disclosure,
    ),
    (
        CheckDefinition(
            name="deprecated-tls",
            title="Unencrypted HTTP Connection",
            severity=SEVERITY_HIGH,
            category="ssl",
            description="The page is served over plain HTTP.",
            risk_impact="Anyone on the network path can read or modify the traffic.",
            explanation="Without TLS, credentials and session cookies travel in cleartext.",
            fix_steps=(
                "Install a TLS certificate (for example via Let's Encrypt).",
                "Redirect all HTTP traffic to HTTPS.",
            ),
        ),
        detect_cleartext_http,
    ),
    (
        CheckDefinition(
            name="mixed-content",
            title="Mixed Content Detected",
            severity=SEVERITY_MEDIUM,
            category="content",
            description="The HTTPS page loads resources over plain HTTP.",
            risk_impact="A network attacker can replace those resources and take over the page.",
            fix_steps=("Load every sub-resource over HTTPS.", "Add CSP 'upgrade-insecure-requests'."),
        ),
        detect_mixed_content,
    ),
    (
        CheckDefinition(
            name="form-action-http",
            title="Insecure Form Submission",
            severity=SEVERITY_HIGH,
            category="content",
            description="A form on an HTTPS page submits its data to an HTTP endpoint.",
            risk_impact="Submitted data, including passwords, is sent in cleartext.",
            fix_steps=("Point every form action at an HTTPS URL.",),
        ),
        detect_insecure_form,
    ),
    (
        CheckDefinition(
            name="cors-wildcard",
            title="CORS Allows Any Origin",
            severity=SEVERITY_MEDIUM,
            category="configuration",
            description="Access-Control-Allow-Origin is set to '*'.",
            risk_impact="Any website can read responses from this origin.",
            fix_steps=("Return an explicit allow-list of trusted origins.",),
        ),
        detect_cors_wildcard,
    ),
    (
        CheckDefinition(
            name="cors-credentials-wildcard",
            title="CORS Allows Any Origin with Credentials",
            severity=SEVERITY_HIGH,
            category="configuration",
            description="A wildcard origin is combined with Access-Control-Allow-Credentials: true.",
            risk_impact="Authenticated data may be readable by arbitrary websites.",
            fix_steps=("Never combine credentials with a wildcard origin.", "Validate the Origin header."),
        ),
        detect_cors_credentials_wildcard,
    ),
    (
        CheckDefinition(
            name="cookie-security",
            title="Insecure Cookie Configuration",
            severity=SEVERITY_MEDIUM,
            category="cookies",
            description="Cookies are set without HttpOnly, Secure or SameSite attributes.",
            risk_impact="Session cookies can be stolen via XSS or sent over cleartext connections.",
            fix_steps=("Set HttpOnly, Secure and SameSite=Lax (or Strict) on session cookies.",),
            code_examples=(
                CodeExample(
                    label="Set-Cookie",
                    language="http",
                    code="Set-Cookie: session=...; Path=/; Secure; HttpOnly; SameSite=Lax",
                ),
            ),
        ),
        detect_cookie_issues,
    ),
    (
        CheckDefinition(
            name="sri-missing",
            title="Missing Subresource Integrity",
            severity=SEVERITY_MEDIUM,
            category="content",
            description="External scripts are loaded without an integrity attribute.",
            risk_impact="A compromised CDN can serve malicious code to every visitor.",
            fix_steps=("Add integrity and crossorigin attributes to third-party script tags.",),
        ),
        detect_sri_missing,
    ),
    (
        CheckDefinition(
            name="hardcoded-secrets",
            title="Hardcoded API Keys",
            severity=SEVERITY_CRITICAL,
            category="information-disclosure",
            description="The page source contains strings that look like live credentials.",
            risk_impact="Anyone viewing the page can use these keys against the issuing service.",
            fix_steps=(
                "Revoke and rotate the exposed keys immediately.",
                "Move secrets to server-side configuration.",
            ),
        ),
        detect_hardcoded_secrets,
    ),
    (
        CheckDefinition(
            name="jwt-in-url",
            title="JWT in URL",
            severity=SEVERITY_HIGH,
            category="information-disclosure",
            description="Links or resources carry JSON Web Tokens in their query string.",
            risk_impact="Tokens leak through logs, browser history and Referer headers.",
            fix_steps=("Send tokens in headers or cookies, never in URLs.",),
        ),
        detect_jwt_in_url,
    ),
    (
        CheckDefinition(
            name="directory-listing",
            title="Directory Listing Enabled",
            severity=SEVERITY_MEDIUM,
            category="configuration",
            description="The server returns an auto-generated directory index.",
            risk_impact="Files that were never meant to be linked become discoverable.",
            fix_steps=("Disable autoindex / Options Indexes on the web server.",),
        ),
        detect_directory_listing,
    ),
    (
        CheckDefinition(
            name="sensitive-files",
            title="Sensitive File References",
            severity=SEVERITY_LOW,
            category="information-disclosure",
            description="The page references files that usually hold configuration or credentials.",
            fix_steps=("Make sure the referenced files are not served publicly.",),
        ),
        detect_sensitive_files,
    ),
    (
        CheckDefinition(
            name="outdated-js-libs",
            title="Outdated JavaScript Libraries",
            severity=SEVERITY_MEDIUM,
            category="content",
            description="Client-side libraries with known vulnerabilities are in use.",
            risk_impact="Known XSS and prototype pollution bugs in these versions can be exploited.",
            fix_steps=("Upgrade the listed libraries to a supported release.",),
        ),
        detect_outdated_js,
    ),
    (
        CheckDefinition(
            name="cms-fingerprinting",
            title="CMS Detected",
            severity=SEVERITY_INFO,
            category="information-disclosure",
            description="The CMS or framework powering the site could be identified.",
            fix_steps=("Keep the platform and its plugins up to date.",),
        ),
        detect_cms,
    ),
    (
        CheckDefinition(
            name="source-maps",
            title="Source Maps Exposed",
            severity=SEVERITY_LOW,
            category="information-disclosure",
            description="JavaScript source maps are referenced from the page.",
            fix_steps=("Do not publish source maps to production, or restrict access to them.",),
        ),
        detect_source_maps,
    ),
    (
        CheckDefinition(
            name="sensitive-comments",
            title="HTML Comments with Sensitive Keywords",
            severity=SEVERITY_LOW,
            category="information-disclosure",
            description="HTML comments mention credentials, debugging or internal notes.",
            fix_steps=("Strip comments from production templates.",),
        ),
        detect_sensitive_comments,
    ),
    (
        CheckDefinition(
            name="dangerous-inline-js",
            title="Dangerous Inline JavaScript",
            severity=SEVERITY_MEDIUM,
            category="content",
            description="Inline scripts use eval, document.write or similar sinks.",
            risk_impact="These sinks turn any injection into script execution.",
            fix_steps=("Replace string evaluation with safe DOM APIs.",),
        ),
        detect_dangerous_inline_js,
    ),
    (
        CheckDefinition(
            name="open-redirect",
            title="Potential Open Redirect",
            severity=SEVERITY_MEDIUM,
            category="content",
            description="Redirect parameters or location assignments driven by the URL were found.",
            risk_impact="Phishing links can abuse the trusted domain to bounce victims elsewhere.",
            fix_steps=("Validate redirect targets against an allow-list of paths.",),
        ),
        detect_open_redirect,
    ),
    (
        CheckDefinition(
            name="email-exposure",
            title="Email Addresses Exposed",
            severity=SEVERITY_LOW,
            category="information-disclosure",
            description="Plain-text email addresses appear in the page source.",
            fix_steps=("Use a contact form or obfuscate addresses to reduce spam harvesting.",),
        ),
        detect_email_exposure,
    ),
    (
        CheckDefinition(
            name="reverse-tabnabbing",
            title="Reverse Tabnabbing",
            severity=SEVERITY_LOW,
            category="content",
            description='Links open in a new tab without rel="noopener".',
            fix_steps=('Add rel="noopener noreferrer" to links with target="_blank".',),
        ),
        detect_reverse_tabnabbing,
    ),
    (
        CheckDefinition(
            name="autocomplete-sensitive",
            title="Autocomplete on Sensitive Fields",
            severity=SEVERITY_LOW,
            category="content",
            description="Password or card fields do not declare an autocomplete policy.",
            fix_steps=('Set autocomplete="new-password" or "off" on sensitive inputs.',),
        ),
        detect_autocomplete_sensitive,
    ),
    (
        CheckDefinition(
            name="prototype-pollution",
            title="Prototype Pollution Patterns",
            severity=SEVERITY_MEDIUM,
            category="content",
            description="Client code manipulates object prototypes with request-controlled data.",
            risk_impact="Polluted prototypes can bypass security checks or lead to XSS.",
            fix_steps=("Avoid merging untrusted objects; use Object.create(null) for maps.",),
        ),
        detect_prototype_pollution,
    ),
)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegisteredCheck:
    name: str
    func: Callable[..., Any]
    kind: str
    source: str = "core"


class CheckRegistry:
    """Two disjoint, ordered sets of detectors: synchronous and asynchronous."""

    def __init__(self) -> None:
        self._checks: Dict[str, List[RegisteredCheck]] = {
            CHECK_KIND_SYNC: [],
            CHECK_KIND_ASYNC: [],
        }
        self._lock = threading.RLock()

    def register(
        self,
        kind: str,
        func: Callable[..., Any],
        *,
        name: Optional[str] = None,
        source: str = "core",
    ) -> None:
        if kind not in self._checks:
            raise ValueError(f"Unknown check kind: {kind}")
        declared = getattr(func, "check_kind", kind)
        if declared != kind:
            raise ValueError(f"{getattr(func, '__name__', func)!r} is a {declared} check, not {kind}")
        entry = RegisteredCheck(
            name=name or getattr(func, "__name__", repr(func)),
            func=func,
            kind=kind,
            source=source,
        )
        with self._lock:
            if any(existing.name == entry.name for entries in self._checks.values() for existing in entries):
                raise ValueError(f"Check already registered: {entry.name}")
            self._checks[kind].append(entry)

    def register_sync(self, func: SyncCheck, *, name: Optional[str] = None, source: str = "core") -> None:
        self.register(CHECK_KIND_SYNC, func, name=name, source=source)

    def register_async(self, func: AsyncCheck, *, name: Optional[str] = None, source: str = "core") -> None:
        self.register(CHECK_KIND_ASYNC, func, name=name, source=source)

    def register_many(self, kind: str, funcs: Iterable[Callable[..., Any]], *, source: str = "core") -> None:
        for func in funcs:
            self.register(kind, func, source=source)

    def _iter(self, kind: str, disabled: Optional[Iterable[str]]) -> Iterator[RegisteredCheck]:
        disabled_lookup = {name.lower() for name in (disabled or ())}
        with self._lock:
            entries = list(self._checks[kind])
        for entry in entries:
            if entry.name.lower() in disabled_lookup:
                continue
            yield entry

    def iter_sync(self, *, disabled: Optional[Iterable[str]] = None) -> Iterator[RegisteredCheck]:
        return self._iter(CHECK_KIND_SYNC, disabled)

    def iter_async(self, *, disabled: Optional[Iterable[str]] = None) -> Iterator[RegisteredCheck]:
        return self._iter(CHECK_KIND_ASYNC, disabled)

    def describe(self, *, disabled: Optional[Iterable[str]] = None) -> Dict[str, List[Dict[str, Any]]]:
        disabled_lookup = {name.lower() for name in (disabled or ())}
        with self._lock:
            snapshot = {kind: list(entries) for kind, entries in self._checks.items()}
        description: Dict[str, List[Dict[str, Any]]] = {}
        for kind, entries in snapshot.items():
            description[kind] = []
            for entry in entries:
                item: Dict[str, Any] = {
                    "name": entry.name,
                    "source": entry.source,
                    "enabled": entry.name.lower() not in disabled_lookup,
                }
                definition = getattr(entry.func, "definition", None)
                if definition is not None:
                    item["title"] = definition.title
                    item["severity"] = definition.severity
                    item["category"] = definition.category
                description[kind].append(item)
        return description

    def __len__(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._checks.values())


def build_default_registry() -> CheckRegistry:
    """Assemble the built-in detectors in a fixed order."""
    registry = CheckRegistry()
    registry.register_many(
        CHECK_KIND_SYNC,
        [build_check(definition, detect) for definition, detect in SYNC_CHECK_DEFINITIONS],
    )
    registry.register_many(CHECK_KIND_ASYNC, ASYNC_CHECKS)
    logger.debug("Registered %d built-in checks", len(registry))
    return registry
