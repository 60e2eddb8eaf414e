"""Network-capable checks: TLS, DNS mail policy, DKIM, DNSSEC and well-known files.

Each check takes the scanned URL and returns a list of findings. They may block
on the network, so :func:`run_async_checks` fans them out over a thread pool and
returns whatever completed without error. Individual network failures inside a
check are treated as "no signal" and produce no finding.
"""

from __future__ import annotations

import logging
import re
import socket
import ssl
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import requests

from .config import USER_AGENT
from .exceptions import TargetUnreachableError
from .fetcher import fetch
from .models import (
    CHECK_KIND_ASYNC,
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

TLS_TIMEOUT = 5
DOH_TIMEOUT = 4
LIVE_FETCH_TIMEOUT = 5
LIVE_FETCH_MAX_BYTES = 64 * 1024
MAX_ASYNC_WORKERS = 8

DOH_RESOLVERS = (
    "https://dns.google/resolve",
    "https://cloudflare-dns.com/dns-query",
)

DKIM_SELECTORS = (
    "default", "google", "selector1", "selector2", "k1", "s1", "dkim", "mail", "protonmail",
    "protonmail2", "protonmail3", "mxvault", "cm", "mandrill", "smtp", "zendesk1", "zendesk2",
    "em1", "em2", "s2",
)
DKIM_LOOKUP_BUDGET = 6
DNS_TYPE_CODES = {"CNAME": 5, "TXT": 16}

WEAK_TLS_PROTOCOLS = {"SSLv3", "TLSv1", "TLSv1.1"}

# OpenSSL X509_V_ERR_* codes surfaced through SSLCertVerificationError.verify_code
X509_CERT_HAS_EXPIRED = 10
X509_DEPTH_ZERO_SELF_SIGNED = 18
X509_SELF_SIGNED_IN_CHAIN = 19
X509_UNABLE_TO_GET_ISSUER_LOCALLY = 20
X509_UNABLE_TO_VERIFY_LEAF = 21

ROBOTS_SENSITIVE_PATTERN = re.compile(
    r"Disallow:\s*(/(?:admin|backup|config|database|private|secret|\.env|\.git|wp-admin|cgi-bin|tmp"
    r"|internal|api/internal|debug|staging|test)\b[^\n]*)",
    re.I,
)

AsyncCheck = Callable[[str], List[Finding]]


def async_check(name: str) -> Callable[[AsyncCheck], AsyncCheck]:
    def decorator(func: AsyncCheck) -> AsyncCheck:
        func.__name__ = name
        setattr(func, "check_kind", CHECK_KIND_ASYNC)
        return func

    return decorator


def _make_finding(
    title: str,
    severity: str,
    category: str,
    description: str,
    evidence: str,
    risk_impact: str,
    explanation: str,
    fix_steps: Sequence[str],
    code_examples: Sequence[CodeExample] = (),
) -> Finding:
    return Finding(
        id=generate_finding_id("vuln-async"),
        title=title,
        severity=severity,
        category=category,
        description=description,
        evidence=evidence,
        risk_impact=risk_impact,
        explanation=explanation,
        fix_steps=tuple(fix_steps),
        code_examples=tuple(code_examples),
    )


def _origin(url: str) -> Optional[str]:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


# ---------------------------------------------------------------------------
# DNS over HTTPS
# ---------------------------------------------------------------------------


def _doh_query(resolver: str, name: str, record_type: str) -> Optional[Dict[str, Any]]:
    try:
        resp = requests.get(
            resolver,
            params={"name": name, "type": record_type, "do": "true"},
            headers={"Accept": "application/dns-json", "User-Agent": USER_AGENT},
            timeout=DOH_TIMEOUT,
        )
        resp.raise_for_status()
        payload = resp.json()
    except (requests.RequestException, ValueError) as exc:
        logger.debug("DoH query %s %s via %s failed: %s", record_type, name, resolver, exc)
        return None
    return payload if isinstance(payload, dict) else None


def _dns_answers(name: str, record_type: str) -> Optional[List[str]]:
    """Answer data of ``record_type`` for ``name``; ``None`` when no resolver answered."""
    type_code = DNS_TYPE_CODES[record_type]
    for resolver in DOH_RESOLVERS:
        payload = _doh_query(resolver, name, record_type)
        if payload is None:
            continue
        return [
            str(answer.get("data", ""))
            for answer in payload.get("Answer") or []
            if answer.get("type") == type_code
        ]
    return None


def _txt_records(name: str) -> Optional[List[str]]:
    answers = _dns_answers(name, "TXT")
    if answers is None:
        return None
    records: List[str] = []
    for data in answers:
        # Long TXT records arrive as several quoted strings.
        parts = re.findall(r'"((?:[^"\\]|\\.)*)"', data)
        records.append("".join(parts) if parts else data)
    return records


@async_check("email-dns-policy")
def check_email_dns_policy(url: str) -> List[Finding]:
    domain = urlparse(url).hostname
    if not domain:
        return []
    findings: List[Finding] = []

    spf_records = _txt_records(domain)
    if spf_records is not None:
        spf = next((record for record in spf_records if record.startswith("v=spf1")), None)
        if spf is None:
            findings.append(
                _make_finding(
                    "Missing SPF Record",
                    SEVERITY_MEDIUM,
                    "configuration",
                    "No SPF (Sender Policy Framework) DNS record was found for this domain.",
                    f"No TXT record starting with 'v=spf1' found for {domain}.",
                    "Attackers can send email that appears to come from this domain.",
                    "SPF lists the mail servers allowed to send email for the domain.",
                    (
                        "Add a TXT record with your SPF policy.",
                        "Use -all (hard fail) once all legitimate senders are listed.",
                    ),
                    (CodeExample("DNS TXT Record", "dns", "v=spf1 include:_spf.google.com -all"),),
                )
            )
        elif "+all" in spf:
            findings.append(
                _make_finding(
                    "Weak SPF Record (+all)",
                    SEVERITY_HIGH,
                    "configuration",
                    "The SPF record uses +all, which authorises every server on the internet.",
                    f"SPF record: {spf}",
                    "SPF offers no protection against spoofed mail from this domain.",
                    "The +all mechanism means 'allow all senders'.",
                    ("Replace +all with -all or ~all.",),
                )
            )

    dmarc_records = _txt_records(f"_dmarc.{domain}")
    if dmarc_records is not None:
        dmarc = next((record for record in dmarc_records if record.startswith("v=DMARC1")), None)
        if dmarc is None:
            findings.append(
                _make_finding(
                    "Missing DMARC Record",
                    SEVERITY_MEDIUM,
                    "configuration",
                    "No DMARC record was found.",
                    f"No TXT record at _dmarc.{domain} starting with 'v=DMARC1'.",
                    "Receivers have no policy for mail that fails SPF or DKIM.",
                    "DMARC builds on SPF and DKIM and tells receivers what to do with failures.",
                    (
                        "Add a TXT record at _dmarc.<domain>.",
                        "Start with p=none, then move to p=quarantine or p=reject.",
                    ),
                    (
                        CodeExample(
                            "DNS TXT Record",
                            "dns",
                            "v=DMARC1; p=reject; rua=mailto:dmarc-reports@example.com",
                        ),
                    ),
                )
            )
        elif re.search(r"\bp=none\b", dmarc):
            findings.append(
                _make_finding(
                    "DMARC Policy Set to None",
                    SEVERITY_LOW,
                    "configuration",
                    "A DMARC record exists but its policy is 'none'.",
                    f"DMARC record: {dmarc}",
                    "Spoofed mail is still delivered.",
                    "p=none only monitors.",
                    ("Upgrade to p=quarantine or p=reject after reviewing reports.",),
                )
            )
    return findings


def _dkim_selector_published(selector: str, domain: str) -> Optional[bool]:
    host = f"{selector}._domainkey.{domain}"
    txt = _txt_records(host)
    if txt and any("v=DKIM1" in record or "p=" in record for record in txt):
        return True
    cnames = _dns_answers(host, "CNAME")
    if cnames:
        return True
    if txt is None and cnames is None:
        return None
    return False


@async_check("dkim")
def check_dkim(url: str) -> List[Finding]:
    """Look for a DKIM key under common selectors.

    Selectors are queried concurrently and the first hit ends the search.
    Custom selectors cannot be enumerated, so a miss is reported at low
    severity. No finding is produced when the resolvers did not answer or the
    lookups overran their budget.
    """
    domain = urlparse(url).hostname
    if not domain:
        return []
    outcomes: List[Optional[bool]] = []
    pool = ThreadPoolExecutor(max_workers=len(DKIM_SELECTORS))
    try:
        futures = [pool.submit(_dkim_selector_published, selector, domain) for selector in DKIM_SELECTORS]
        for future in as_completed(futures, timeout=DKIM_LOOKUP_BUDGET):
            published = future.result()
            if published:
                return []
            outcomes.append(published)
    except FuturesTimeoutError:
        logger.info("DKIM lookup for %s exceeded %ss", domain, DKIM_LOOKUP_BUDGET)
        return []
    finally:
        pool.shutdown(wait=False, cancel_futures=True)
    if all(outcome is None for outcome in outcomes):
        return []
    return [
        _make_finding(
            "No DKIM Records Found",
            SEVERITY_LOW,
            "configuration",
            "No DKIM (DomainKeys Identified Mail) records were found for common selectors.",
            f"Checked selectors: {', '.join(DKIM_SELECTORS)} at _domainkey.{domain}",
            "Receivers cannot verify that mail was actually sent by your mail servers.",
            "DKIM signs outgoing mail. Selectors vary by provider, so custom selectors may be missed.",
            (
                "Configure DKIM signing in your email provider.",
                "Publish the public key as a TXT record at <selector>._domainkey.<domain>.",
            ),
        )
    ]


@async_check("dnssec")
def check_dnssec(url: str) -> List[Finding]:
    domain = urlparse(url).hostname
    if not domain:
        return []
    answered = False
    for resolver in DOH_RESOLVERS:
        payload = _doh_query(resolver, domain, "A")
        if payload is None:
            continue
        answered = True
        if payload.get("AD") is True:
            return []
    if not answered:
        return []
    return [
        _make_finding(
            "DNSSEC Not Enabled",
            SEVERITY_INFO,
            "configuration",
            "DNSSEC does not appear to be enabled for this domain.",
            f"DNSSEC validation (AD flag) not set for {domain}.",
            "DNS responses can be spoofed, redirecting users to malicious servers.",
            "DNSSEC signs DNS records so resolvers can detect tampering.",
            ("Enable DNSSEC through your domain registrar.", "Verify with: dig +dnssec <domain>"),
        )
    ]


# ---------------------------------------------------------------------------
# TLS
# ---------------------------------------------------------------------------


def _handshake(host: str, port: int, context: ssl.SSLContext) -> Tuple[Dict[str, Any], Optional[str]]:
    with socket.create_connection((host, port), timeout=TLS_TIMEOUT) as sock:
        with context.wrap_socket(sock, server_hostname=host) as ssock:
            return ssock.getpeercert() or {}, ssock.version()


def _permissive_context() -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    try:
        context.minimum_version = ssl.TLSVersion.MINIMUM_SUPPORTED
    except (ValueError, AttributeError):
        pass
    return context


def _parse_not_after(value: str) -> Optional[datetime]:
    try:
        return datetime.strptime(value, "%b %d %H:%M:%S %Y %Z").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


@async_check("tls-certificate")
def check_tls_certificate(url: str) -> List[Finding]:
    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.hostname:
        return []
    host = parsed.hostname
    port = parsed.port or 443
    findings: List[Finding] = []

    cert: Dict[str, Any] = {}
    protocol: Optional[str] = None
    try:
        cert, protocol = _handshake(host, port, ssl.create_default_context())
    except ssl.SSLCertVerificationError as exc:
        code = getattr(exc, "verify_code", None)
        message = getattr(exc, "verify_message", None) or str(exc)
        if code in (X509_DEPTH_ZERO_SELF_SIGNED, X509_SELF_SIGNED_IN_CHAIN):
            findings.append(
                _make_finding(
                    "Self-Signed TLS Certificate",
                    SEVERITY_HIGH,
                    "ssl",
                    "The server uses a self-signed TLS certificate that browsers do not trust.",
                    f"Certificate verification error: {message}",
                    "Users learn to click through warnings, which makes real interception easy.",
                    "Self-signed certificates encrypt traffic but do not prove the server's identity.",
                    ("Obtain a certificate from a trusted CA (Let's Encrypt is free).",),
                )
            )
        elif code in (X509_UNABLE_TO_GET_ISSUER_LOCALLY, X509_UNABLE_TO_VERIFY_LEAF):
            findings.append(
                _make_finding(
                    "Incomplete TLS Certificate Chain",
                    SEVERITY_MEDIUM,
                    "ssl",
                    "The TLS certificate chain is incomplete; intermediate certificates may be missing.",
                    f"Certificate verification error: {message}",
                    "Some clients cannot build a path to a trusted root and will refuse to connect.",
                    "Servers must send the leaf certificate together with its intermediates.",
                    ("Configure the server to send the full chain (leaf + intermediates).",),
                )
            )
        elif code == X509_CERT_HAS_EXPIRED:
            findings.append(
                _make_finding(
                    "Expired TLS Certificate",
                    SEVERITY_CRITICAL,
                    "ssl",
                    "The TLS certificate has expired.",
                    f"Certificate verification error: {message}",
                    "Browsers block access with a full-page security warning.",
                    "An expired certificate can no longer vouch for the server's identity.",
                    ("Renew the certificate immediately.", "Automate renewal with certbot or your host."),
                )
            )
        try:
            _, protocol = _handshake(host, port, _permissive_context())
        except (OSError, ssl.SSLError) as inner:
            logger.debug("Unverified TLS handshake with %s:%s failed: %s", host, port, inner)
    except (OSError, ssl.SSLError) as exc:
        # Handshake refused by the default context, possibly a legacy-only server.
        logger.debug("TLS handshake with %s:%s failed: %s", host, port, exc)
        try:
            _, protocol = _handshake(host, port, _permissive_context())
        except (OSError, ssl.SSLError) as inner:
            logger.debug("Unverified TLS handshake with %s:%s failed: %s", host, port, inner)
            return findings

    not_after = cert.get("notAfter")
    expires = _parse_not_after(not_after) if isinstance(not_after, str) else None
    if expires is not None:
        days = (expires - datetime.now(timezone.utc)).days
        if days < 0:
            findings.append(
                _make_finding(
                    "Expired TLS Certificate",
                    SEVERITY_CRITICAL,
                    "ssl",
                    "The TLS certificate has expired.",
                    f"Certificate expired on {not_after} ({abs(days)} days ago).",
                    "Browsers block access with a full-page security warning.",
                    "An expired certificate can no longer vouch for the server's identity.",
                    ("Renew the certificate immediately.",),
                )
            )
        elif days <= 14:
            findings.append(
                _make_finding(
                    "TLS Certificate Expiring Soon",
                    SEVERITY_HIGH,
                    "ssl",
                    "The TLS certificate will expire within 14 days.",
                    f"Certificate expires on {not_after} ({days} days remaining).",
                    "Once it expires, browsers will block access.",
                    "Renewing ahead of expiry prevents downtime.",
                    ("Renew the certificate now.", "Enable automatic renewal."),
                )
            )
        elif days <= 30:
            findings.append(
                _make_finding(
                    "TLS Certificate Expiring Within 30 Days",
                    SEVERITY_MEDIUM,
                    "ssl",
                    "The TLS certificate will expire within 30 days.",
                    f"Certificate expires on {not_after} ({days} days remaining).",
                    "Plan renewal to avoid disruption.",
                    "Most CAs recommend renewing at least 30 days before expiry.",
                    ("Schedule certificate renewal.",),
                )
            )

    if protocol in WEAK_TLS_PROTOCOLS:
        findings.append(
            _make_finding(
                "Weak TLS Protocol Version",
                SEVERITY_HIGH,
                "ssl",
                f"The server negotiated {protocol}, which is considered insecure.",
                f"Negotiated protocol: {protocol}",
                "Legacy protocol versions have known attacks such as POODLE and BEAST.",
                "Only TLS 1.2 and TLS 1.3 should be enabled.",
                ("Disable SSLv3, TLS 1.0 and TLS 1.1.",),
                (CodeExample("Nginx", "nginx", "ssl_protocols TLSv1.2 TLSv1.3;"),),
            )
        )
    return findings


# ---------------------------------------------------------------------------
# Well-known files
# ---------------------------------------------------------------------------


def _fetch_text(url: str) -> Optional[str]:
    try:
        result = fetch(url, timeout=LIVE_FETCH_TIMEOUT, max_bytes=LIVE_FETCH_MAX_BYTES)
    except TargetUnreachableError:
        return None
    if not 200 <= result.status_code < 300:
        return None
    return result.text


@async_check("robots-txt")
def check_robots_txt(url: str) -> List[Finding]:
    origin = _origin(url)
    if origin is None:
        return []
    body = _fetch_text(f"{origin}/robots.txt")
    if not body:
        return []
    if "User-agent" not in body and "Disallow" not in body and "Allow" not in body:
        return []
    found = [match.group(0).strip() for match in ROBOTS_SENSITIVE_PATTERN.finditer(body)]
    if not found:
        return []
    evidence = f"Fetched {origin}/robots.txt, found {len(found)} sensitive path(s):\n" + "\n".join(found[:8])
    if len(found) > 8:
        evidence += f"\n...and {len(found) - 8} more"
    return [
        _make_finding(
            "Sensitive Paths Exposed in robots.txt",
            SEVERITY_MEDIUM,
            "information-disclosure",
            "robots.txt reveals sensitive directory paths.",
            evidence,
            "Attackers use robots.txt as a map to admin panels and configuration files.",
            "robots.txt is public; listing a path there advertises it.",
            (
                "Remove sensitive paths from robots.txt.",
                "Protect those endpoints with authentication instead.",
            ),
        )
    ]


@async_check("security-txt")
def check_security_txt(url: str) -> List[Finding]:
    origin = _origin(url)
    if origin is None:
        return []
    for path in ("/.well-known/security.txt", "/security.txt"):
        if _fetch_text(f"{origin}{path}") is not None:
            return []
    return [
        _make_finding(
            "Missing security.txt",
            SEVERITY_INFO,
            "configuration",
            "No security.txt file was found at /.well-known/security.txt or /security.txt.",
            f"Neither {origin}/.well-known/security.txt nor {origin}/security.txt returned a 2xx status.",
            "Researchers who find a vulnerability may not know how to report it.",
            "security.txt (RFC 9116) publishes responsible disclosure contacts.",
            ("Create /.well-known/security.txt with at least Contact and Expires.",),
            (
                CodeExample(
                    "security.txt",
                    "text",
                    "Contact: mailto:security@example.com\nExpires: 2027-12-31T23:59:59Z",
                ),
            ),
        )
    ]


ASYNC_CHECKS: Tuple[AsyncCheck, ...] = (
    check_email_dns_policy,
    check_dkim,
    check_dnssec,
    check_tls_certificate,
    check_robots_txt,
    check_security_txt,
)


def run_async_checks(
    url: str,
    checks: Iterable[Any],
    *,
    max_workers: int = MAX_ASYNC_WORKERS,
) -> List[Finding]:
    """Run network checks concurrently and merge whatever succeeded.

    ``checks`` yields plain callables or registry entries exposing ``name`` and
    ``func``. A check that raises contributes nothing; results are merged in
    registration order.
    """
    entries = [
        (getattr(item, "name", getattr(item, "__name__", repr(item))), getattr(item, "func", item))
        for item in checks
    ]
    if not entries:
        return []
    findings: List[Finding] = []
    with ThreadPoolExecutor(max_workers=min(max_workers, len(entries))) as executor:
        futures = [(name, executor.submit(func, url)) for name, func in entries]
        for name, future in futures:
            try:
                result = future.result()
            except Exception as exc:
                logger.warning("Async check %s failed for %s: %s", name, url, exc)
                continue
            findings.extend(item for item in result or [] if isinstance(item, Finding))
    return findings
