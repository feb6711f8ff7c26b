"""Security scan agent.

Scans engineering design documents for known vulnerability patterns and
reports every match as a conflict. Most findings require a human
decision; a few are advisory only.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path

from conductor.schemas.results import AgentResult, ConflictReport, Severity
from conductor.schemas.state import AgentTask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VulnerabilityPattern:
    id: str
    title: str
    severity: Severity
    kind: str
    pattern: re.Pattern[str]
    description: str
    recommendation: str
    requires_human_input: bool = True

    def to_report(self, source: str = "") -> ConflictReport:
        where = f" (in {source})" if source else ""
        return ConflictReport(
            source_id=self.id,
            category="security",
            severity=self.severity,
            description=f"{self.title}: {self.description}{where}",
            recommendation=self.recommendation,
            requires_human_input=self.requires_human_input,
        )


def _p(expr: str) -> re.Pattern[str]:
    return re.compile(expr, re.IGNORECASE)


VULNERABILITY_PATTERNS: tuple[VulnerabilityPattern, ...] = (
    VulnerabilityPattern(
        id="VULN-001",
        title="Deprecated Crypto Library",
        severity=Severity.HIGH,
        kind="crypto",
        pattern=_p(r"crypto[-_]?js\s*<=?\s*[0-3]\.\d+|deprecated\s+crypto|old\s+crypto\s+library"),
        description="Use of a deprecated crypto library with known vulnerabilities",
        recommendation="Upgrade the crypto library or use the platform's built-in crypto module",
    ),
    VulnerabilityPattern(
        id="VULN-002",
        title="Hardcoded API Credentials",
        severity=Severity.CRITICAL,
        kind="authentication",
        pattern=_p(
            r"\.env\s+files?|store\s+(api\s*keys?|credentials?|secrets?|passwords?)\s+in\s+\.env"
            r"|hardcoded\s+(api\s*keys?|credentials?|secrets?|passwords?)"
        ),
        description="Credentials stored without proper secret management",
        recommendation="Use a secret manager such as Vault or a cloud key vault for credentials",
    ),
    VulnerabilityPattern(
        id="VULN-003",
        title="SQL Injection Vulnerability",
        severity=Severity.CRITICAL,
        kind="injection",
        pattern=_p(
            r"sql\s+injection|string\s+concatenation\s+(in|for)\s+sql|raw\s+sql\s+queries?|unsafe\s+sql"
        ),
        description="User input concatenated directly into SQL queries",
        recommendation="Use parameterized queries for all database operations",
    ),
    VulnerabilityPattern(
        id="VULN-004",
        title="Missing Input Validation",
        severity=Severity.HIGH,
        kind="validation",
        pattern=_p(r"missing\s+validation|no\s+input\s+validation|without\s+validation|unvalidated\s+input"),
        description="Public endpoints accept unvalidated input",
        recommendation="Validate all user input at API boundaries",
    ),
    VulnerabilityPattern(
        id="VULN-005",
        title="Weak Password Policy",
        severity=Severity.MEDIUM,
        kind="authentication",
        pattern=_p(r"weak\s+password|simple\s+password\s+policy|no\s+password\s+requirements?"),
        description="Password policy does not enforce sufficient complexity",
        recommendation="Require at least 12 characters mixing case, digits and symbols",
        requires_human_input=False,
    ),
    VulnerabilityPattern(
        id="VULN-006",
        title="Insecure Direct Object Reference",
        severity=Severity.HIGH,
        kind="authentication",
        pattern=_p(r"\bidor\b|insecure\s+direct\s+object|unauthorized\s+access\s+to\s+resources?"),
        description="Resources are reachable without authorization checks",
        recommendation="Verify user permissions before granting access to any resource",
    ),
    VulnerabilityPattern(
        id="VULN-007",
        title="Cross-Site Scripting (XSS)",
        severity=Severity.CRITICAL,
        kind="injection",
        pattern=_p(r"\bxss\b|cross[-\s]site\s+scripting|unescaped\s+html|dangerouslySetInnerHTML"),
        description="Untrusted content is rendered without escaping",
        recommendation="Sanitize user input before rendering and set Content Security Policy headers",
    ),
    VulnerabilityPattern(
        id="VULN-008",
        title="Sensitive Data Exposure",
        severity=Severity.HIGH,
        kind="data-exposure",
        pattern=_p(
            r"logging\s+(passwords?|secrets?|tokens?|credentials?)|exposing\s+sensitive"
            r"|sensitive\s+data\s+in\s+(logs?|errors?)"
        ),
        description="Sensitive data appears in logs, errors or API responses",
        recommendation="Mask sensitive data and return generic error messages",
    ),
    VulnerabilityPattern(
        id="VULN-009",
        title="Insecure Deserialization",
        severity=Severity.MEDIUM,
        kind="injection",
        pattern=_p(r"insecure\s+deserialization|unsafe\s+deserialization|eval\s*\(|JSON\.parse\s+untrusted"),
        description="Untrusted data is deserialized without validation",
        recommendation="Validate serialized data and use safe parsers",
    ),
    VulnerabilityPattern(
        id="VULN-010",
        title="Insufficient Logging",
        severity=Severity.MEDIUM,
        kind="configuration",
        pattern=_p(r"no\s+logging|insufficient\s+logging|missing\s+audit\s+trail"),
        description="Security events are not logged or monitored",
        recommendation="Log authentication, authorization and sensitive operations",
        requires_human_input=False,
    ),
)


def scan_text(text: str) -> list[VulnerabilityPattern]:
    """Return every vulnerability pattern that matches *text*."""
    return [v for v in VULNERABILITY_PATTERNS if v.pattern.search(text)]


class SecurityScanAgent:
    """Scans design documents matching a glob and reports findings as conflicts."""

    def __init__(self, documents: str, root: Path | str | None = None) -> None:
        self._documents = documents
        self._root = Path(root) if root else Path.cwd()

    def _document_paths(self) -> list[Path]:
        if not self._documents:
            return []
        return sorted(p for p in self._root.glob(self._documents) if p.is_file())

    async def execute(self, task: AgentTask) -> AgentResult:
        start = time.monotonic()
        paths = self._document_paths()
        if not paths:
            logger.warning("No design documents match %s under %s", self._documents, self._root)

        reports: list[ConflictReport] = []
        seen: set[str] = set()
        for path in paths:
            text = path.read_text(encoding="utf-8", errors="replace")
            for vuln in scan_text(text):
                if vuln.id in seen:
                    continue
                seen.add(vuln.id)
                logger.warning("Detected %s (%s) in %s", vuln.title, vuln.severity, path)
                reports.append(vuln.to_report(path.name))

        output = f"Scanned {len(paths)} document(s), {len(reports)} finding(s)"
        return AgentResult(
            success=not reports,
            output=output,
            metadata={
                "documents": [str(p) for p in paths],
                "conflicts": [r.model_dump(mode="json") for r in reports],
            },
            duration=time.monotonic() - start,
        )
