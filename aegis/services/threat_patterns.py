"""
Static threat signatures applied to serialized event details.
"""

import re
from dataclasses import dataclass
from typing import Pattern, Tuple

from aegis.services.security_events import SecurityLevel


@dataclass(frozen=True)
class ThreatPattern:
    """Named signature with the severity assigned to a match."""
    name: str
    pattern: Pattern[str]
    severity: SecurityLevel
    description: str

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


SCANNER_USER_AGENTS = (
    "sqlmap", "nikto", "dirb", "nmap", "masscan", "zap",
    "burp", "acunetix", "appscan", "arachni",
)


DEFAULT_THREAT_PATTERNS: Tuple[ThreatPattern, ...] = (
    ThreatPattern(
        name="SQL Injection",
        pattern=re.compile(
            r"(\bunion\b\s+(all\s+)?\bselect\b"
            r"|\bdrop\s+table\b"
            r"|\binsert\s+into\b"
            r"|\bdelete\s+from\b"
            r"|\bexec\s*\("
            r"|'\s*(or|and)\s+'?\w+'?\s*=\s*'?\w+"
            r"|\bor\s+1\s*=\s*1\b)",
            re.IGNORECASE,
        ),
        severity=SecurityLevel.HIGH,
        description="Potential SQL injection attempt detected",
    ),
    ThreatPattern(
        name="XSS Attempt",
        pattern=re.compile(
            r"(<script|javascript:|onload\s*=|onerror\s*=|onclick\s*=|onmouseover\s*=)",
            re.IGNORECASE,
        ),
        severity=SecurityLevel.HIGH,
        description="Potential cross-site scripting attempt detected",
    ),
    ThreatPattern(
        name="Directory Traversal",
        pattern=re.compile(r"(\.\./|\.\.\\|%2e%2e%2f|%2e%2e%5c)", re.IGNORECASE),
        severity=SecurityLevel.MEDIUM,
        description="Potential directory traversal attempt detected",
    ),
    ThreatPattern(
        name="Command Injection",
        pattern=re.compile(
            r"([;|]\s*(rm|cat|wget|curl|nc|netcat|bash|sh|whoami|ping)\b"
            r"|&&\s*(rm|cat|wget|curl|nc|bash|sh|whoami)\b"
            r"|\$\("
            r"|`[^`]+`)",
            re.IGNORECASE,
        ),
        severity=SecurityLevel.HIGH,
        description="Potential command injection attempt detected",
    ),
    ThreatPattern(
        name="Scanner User Agent",
        pattern=re.compile(
            r"\b(" + "|".join(SCANNER_USER_AGENTS) + r")\b",
            re.IGNORECASE,
        ),
        severity=SecurityLevel.MEDIUM,
        description="Request issued by a known vulnerability scanner",
    ),
)
