"""Shared data models for the scan engine."""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Tuple

SEVERITY_CRITICAL = "critical"
SEVERITY_HIGH = "high"
SEVERITY_MEDIUM = "medium"
SEVERITY_LOW = "low"
SEVERITY_INFO = "info"

SEVERITIES: Tuple[str, ...] = (
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_MEDIUM,
    SEVERITY_LOW,
    SEVERITY_INFO,
)
SEVERITY_ORDER: Dict[str, int] = {name: rank for rank, name in enumerate(SEVERITIES)}

CATEGORIES = frozenset(
    {
        "headers",
        "ssl",
        "content",
        "cookies",
        "configuration",
        "information-disclosure",
    }
)

CHECK_KIND_SYNC = "sync"
CHECK_KIND_ASYNC = "async"

_ID_COUNTER = itertools.count()


def generate_finding_id(prefix: str = "vuln") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{next(_ID_COUNTER)}"


@dataclass(frozen=True)
class CodeExample:
    label: str
    language: str
    code: str

    def to_dict(self) -> Dict[str, str]:
        return {"label": self.label, "language": self.language, "code": self.code}


@dataclass(frozen=True)
class Finding:
    id: str
    title: str
    severity: str
    category: str
    description: str
    evidence: str
    risk_impact: str = ""
    explanation: str = ""
    fix_steps: Tuple[str, ...] = ()
    code_examples: Tuple[CodeExample, ...] = ()

    def __post_init__(self) -> None:
        if self.severity not in SEVERITY_ORDER:
            raise ValueError(f"Unknown severity: {self.severity!r}")
        if self.category not in CATEGORIES:
            raise ValueError(f"Unknown category: {self.category!r}")

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER[self.severity]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "severity": self.severity,
            "category": self.category,
            "description": self.description,
            "evidence": self.evidence,
            "riskImpact": self.risk_impact,
            "explanation": self.explanation,
            "fixSteps": list(self.fix_steps),
            "codeExamples": [example.to_dict() for example in self.code_examples],
        }


@dataclass(frozen=True)
class ScanSummary:
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    info: int = 0
    total: int = 0

    @classmethod
    def from_findings(cls, findings: Iterable[Finding]) -> "ScanSummary":
        counts = {name: 0 for name in SEVERITIES}
        total = 0
        for finding in findings:
            counts[finding.severity] += 1
            total += 1
        return cls(total=total, **counts)

    def to_dict(self) -> Dict[str, int]:
        return {
            "critical": self.critical,
            "high": self.high,
            "medium": self.medium,
            "low": self.low,
            "info": self.info,
            "total": self.total,
        }


@dataclass(frozen=True)
class ScanResult:
    url: str
    scanned_at: str
    duration_ms: int
    findings: Tuple[Finding, ...]
    summary: ScanSummary
    response_headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "scannedAt": self.scanned_at,
            "duration": self.duration_ms,
            "findings": [finding.to_dict() for finding in self.findings],
            "summary": self.summary.to_dict(),
            "responseHeaders": dict(self.response_headers),
        }
