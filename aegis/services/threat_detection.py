"""
Threat detection over recorded events and per-endpoint request bursts.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger

from aegis.services.security_events import (
    EventOrigin,
    EventType,
    SecurityEvent,
)
from aegis.services.threat_patterns import DEFAULT_THREAT_PATTERNS, ThreatPattern


class ThreatDetector:
    """Matches primary events against the pattern library."""

    def __init__(self, patterns: Sequence[ThreatPattern] = DEFAULT_THREAT_PATTERNS):
        self.patterns = tuple(patterns)

    def inspect(self, event: SecurityEvent) -> List[SecurityEvent]:
        """
        Return one derived ``suspicious_activity`` event per matching pattern.

        Derived events and suspicious-activity events are never inspected, so a
        detection can not feed back into the detector.
        """
        if event.is_derived:
            return []
        if event.type is EventType.SUSPICIOUS_ACTIVITY:
            return []

        try:
            text = json.dumps(event.details, default=str)
        except (TypeError, ValueError) as e:
            logger.debug(f"Skipping threat inspection for event {event.id}: {e}")
            return []

        findings = []
        for pattern in self.patterns:
            if not pattern.matches(text):
                continue
            findings.append(SecurityEvent(
                type=EventType.SUSPICIOUS_ACTIVITY,
                severity=pattern.severity,
                ip=event.ip,
                timestamp=event.timestamp,
                origin=EventOrigin.DERIVED,
                user_id=event.user_id,
                email=event.email,
                user_agent=event.user_agent,
                details={
                    "threat_type": pattern.name,
                    "description": pattern.description,
                    "original_event": event.id,
                    "detected_pattern": pattern.pattern.pattern,
                },
            ))
        return findings


@dataclass
class SuspiciousActivityRecord:
    """Request history for one (ip, endpoint) pair."""
    ip: str
    user_agent: str
    endpoint: str
    first_seen: datetime
    last_seen: datetime
    attempts: int = 0
    window_start: Optional[datetime] = None
    window_count: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "ip": self.ip,
            "userAgent": self.user_agent,
            "endpoint": self.endpoint,
            "firstSeen": self.first_seen.isoformat(),
            "lastSeen": self.last_seen.isoformat(),
            "attempts": self.attempts,
        }


class SuspiciousActivityTracker:
    """Counts requests per (ip, endpoint) and reports bursts over the threshold."""

    def __init__(
        self,
        threshold: int = 50,
        window_seconds: int = 60,
        ttl_seconds: int = 24 * 60 * 60,
    ):
        self.threshold = threshold
        self.window = timedelta(seconds=window_seconds)
        self.ttl = timedelta(seconds=ttl_seconds)
        self._records: Dict[Tuple[str, str], SuspiciousActivityRecord] = {}

    def observe(self, ip: str, user_agent: str, endpoint: str, now: datetime) -> bool:
        """Record one request; True when the burst window just crossed the threshold."""
        key = (ip, endpoint)
        record = self._records.get(key)
        if record is None:
            record = SuspiciousActivityRecord(
                ip=ip,
                user_agent=user_agent,
                endpoint=endpoint,
                first_seen=now,
                last_seen=now,
            )
            self._records[key] = record

        record.attempts += 1
        record.last_seen = now
        record.user_agent = user_agent or record.user_agent

        if record.window_start is None or now - record.window_start >= self.window:
            record.window_start = now
            record.window_count = 0
        record.window_count += 1

        # Only the crossing request escalates
        return record.window_count == self.threshold + 1

    def cleanup(self, now: datetime) -> int:
        cutoff = now - self.ttl
        stale = [key for key, record in self._records.items() if record.last_seen < cutoff]
        for key in stale:
            del self._records[key]
        return len(stale)

    def forget(self, ip: str) -> int:
        keys = [key for key in self._records if key[0] == ip]
        for key in keys:
            del self._records[key]
        return len(keys)

    def records(self, limit: Optional[int] = None) -> List[SuspiciousActivityRecord]:
        """Records ordered by most recent activity first."""
        ordered = sorted(self._records.values(), key=lambda r: r.last_seen, reverse=True)
        return ordered if limit is None else ordered[:max(limit, 0)]

    def __len__(self) -> int:
        return len(self._records)
