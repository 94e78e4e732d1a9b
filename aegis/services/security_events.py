"""
Security event model and the bounded in-memory event store.

The store keeps at most ``capacity`` live events. Error-style events (those
carrying a ``message``) are fingerprinted so repeats collapse into one row
with an incremented ``count``; every other event gets a random id.
"""

import hashlib
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from aegis.services.security_metrics import MetricsAggregator


class EventType(Enum):
    """Types of security events."""
    LOGIN_ATTEMPT = "login_attempt"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    SESSION_TIMEOUT = "session_timeout"
    MULTIPLE_SESSIONS = "multiple_sessions"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    APPLICATION_ERROR = "application_error"


class SecurityLevel(Enum):
    """Security severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_LOG_LEVELS = {
    SecurityLevel.LOW: "INFO",
    SecurityLevel.MEDIUM: "WARNING",
    SecurityLevel.HIGH: "ERROR",
    SecurityLevel.CRITICAL: "CRITICAL",
}


class EventOrigin(Enum):
    """Whether an event was reported by a caller or synthesized by the engine."""
    PRIMARY = "primary"
    DERIVED = "derived"


@dataclass
class SecurityEvent:
    """Security event data structure."""
    type: EventType
    severity: SecurityLevel
    ip: str
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    origin: EventOrigin = EventOrigin.PRIMARY
    id: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    message: Optional[str] = None
    stack: Optional[str] = None
    url: Optional[str] = None
    method: Optional[str] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    alert_sent: bool = False
    count: int = 0

    @property
    def is_derived(self) -> bool:
        return self.origin is EventOrigin.DERIVED

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the event for JSON transport."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "severity": self.severity.value,
            "origin": self.origin.value,
            "userId": self.user_id,
            "email": self.email,
            "ip": self.ip,
            "userAgent": self.user_agent,
            "location": self.location,
            "message": self.message,
            "stack": self.stack,
            "url": self.url,
            "method": self.method,
            "details": self.details,
            "resolved": self.resolved,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "alertSent": self.alert_sent,
            "count": self.count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityEvent":
        """Rebuild an event from :meth:`to_dict` output."""
        resolved_at = data.get("resolvedAt")
        return cls(
            id=data["id"],
            type=EventType(data["type"]),
            severity=SecurityLevel(data["severity"]),
            origin=EventOrigin(data.get("origin", EventOrigin.PRIMARY.value)),
            ip=data["ip"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            details=data.get("details") or {},
            user_id=data.get("userId"),
            email=data.get("email"),
            user_agent=data.get("userAgent"),
            location=data.get("location"),
            message=data.get("message"),
            stack=data.get("stack"),
            url=data.get("url"),
            method=data.get("method"),
            resolved=data.get("resolved", False),
            resolved_at=datetime.fromisoformat(resolved_at) if resolved_at else None,
            alert_sent=data.get("alertSent", False),
            count=data.get("count", 1),
        )


def fingerprint(message: str, stack: Optional[str] = None) -> str:
    """Stable id for an error-style event: md5 of message + first stack line."""
    stack_head = stack.split("\n")[0] if stack else ""
    digest = hashlib.md5((message + stack_head).encode("utf-8")).hexdigest()
    return digest[:8]


def utc_from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class EventStore:
    """Bounded, time-ordered collection of security events."""

    def __init__(
        self,
        metrics: "MetricsAggregator",
        capacity: int = 1000,
        retention_seconds: int = 24 * 60 * 60,
    ):
        if capacity < 1:
            raise ValueError("Event store capacity must be positive")
        self.metrics = metrics
        self.capacity = capacity
        self.retention = timedelta(seconds=retention_seconds)
        # Ordered oldest -> newest by last occurrence
        self._events: "OrderedDict[str, SecurityEvent]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._events

    def _derive_id(self, event: SecurityEvent) -> str:
        if event.id:
            return event.id
        if event.message:
            return fingerprint(event.message, event.stack)
        return uuid.uuid4().hex[:16]

    def record(self, event: SecurityEvent) -> str:
        """Insert an event, or bump the count of an existing one with the same id."""
        event_id = self._derive_id(event)
        existing = self._events.get(event_id)
        event.id = event_id

        if existing is not None:
            existing.count += 1
            existing.timestamp = event.timestamp
            self._events.move_to_end(event_id)
            stored = existing
        else:
            event.count = max(event.count, 1)
            self._events[event_id] = event
            stored = event
            self._enforce_capacity()

        self.metrics.update(stored)
        return event_id

    def get(self, event_id: str) -> Optional[SecurityEvent]:
        return self._events.get(event_id)

    def list(
        self,
        limit: int = 50,
        newest_first: bool = True,
        event_type: Optional[EventType] = None,
    ) -> List[SecurityEvent]:
        """Return up to ``limit`` events sorted by timestamp."""
        events: Iterable[SecurityEvent] = self._events.values()
        if event_type is not None:
            events = (event for event in events if event.type is event_type)
        # Insertion order breaks timestamp ties
        ordered = sorted(events, key=lambda e: e.timestamp)
        if newest_first:
            ordered.reverse()
        return ordered[:max(limit, 0)]

    def since(self, cutoff: datetime) -> List[SecurityEvent]:
        return [event for event in self._events.values() if event.timestamp > cutoff]

    def all(self) -> List[SecurityEvent]:
        return list(self._events.values())

    def mark_resolved(self, event_id: str, resolved_at: Optional[datetime] = None) -> bool:
        event = self._events.get(event_id)
        if event is None:
            return False
        event.resolved = True
        event.resolved_at = resolved_at or event.timestamp
        return True

    def sweep(self, now: datetime) -> int:
        """Drop resolved events past the retention horizon, then re-apply the cap."""
        cutoff = now - self.retention
        expired = [
            event_id for event_id, event in self._events.items()
            if event.resolved and (event.resolved_at or event.timestamp) < cutoff
        ]
        for event_id in expired:
            del self._events[event_id]

        removed = len(expired) + self._enforce_capacity()
        if removed:
            logger.debug(f"Event store sweep removed {removed} events ({len(self._events)} remaining)")
        return removed

    def load(self, events: Iterable[SecurityEvent]) -> int:
        """Restore events from a snapshot without touching metrics."""
        loaded = 0
        for event in sorted(events, key=lambda e: e.timestamp):
            if not event.id:
                continue
            self._events[event.id] = event
            self._events.move_to_end(event.id)
            loaded += 1
        self._enforce_capacity()
        return loaded

    def _enforce_capacity(self) -> int:
        removed = 0
        while len(self._events) > self.capacity:
            victim = next(
                (event_id for event_id, event in self._events.items() if event.resolved),
                None,
            )
            if victim is None:
                self._events.popitem(last=False)
            else:
                del self._events[victim]
            removed += 1
        return removed
