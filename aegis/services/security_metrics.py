"""
Rolling security metrics derived incrementally from the event stream.
"""

import copy
import json
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from aegis.services.security_events import EventType, SecurityEvent, SecurityLevel


ERROR_CATEGORIES = [
    ("Database", ("database", "sql", "connection")),
    ("Authentication", ("auth", "login", "session")),
    ("Validation", ("validation", "invalid")),
    ("Network", ("network", "timeout", "enotfound")),
    ("Authorization", ("permission", "forbidden", "unauthorized")),
]


def categorize(text: str) -> str:
    """Map free text onto a coarse category by substring heuristics."""
    lowered = text.lower()
    for category, needles in ERROR_CATEGORIES:
        if any(needle in lowered for needle in needles):
            return category
    return "General"


@dataclass
class SecurityMetrics:
    """Security metrics counters."""
    total_events: int = 0
    critical_events: int = 0
    login_attempts: int = 0
    failed_logins: int = 0
    successful_logins: int = 0
    suspicious_activities: int = 0
    blocked_ips: int = 0
    active_sessions: int = 0
    events_by_type: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    events_by_severity: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    events_by_hour: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    events_by_endpoint: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    events_by_category: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    last_event: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalEvents": self.total_events,
            "criticalEvents": self.critical_events,
            "loginAttempts": self.login_attempts,
            "failedLogins": self.failed_logins,
            "successfulLogins": self.successful_logins,
            "suspiciousActivities": self.suspicious_activities,
            "blockedIPs": self.blocked_ips,
            "activeSessions": self.active_sessions,
            "eventsByType": dict(self.events_by_type),
            "eventsBySeverity": dict(self.events_by_severity),
            "eventsByHour": dict(self.events_by_hour),
            "eventsByEndpoint": dict(self.events_by_endpoint),
            "eventsByCategory": dict(self.events_by_category),
            "lastEvent": self.last_event,
        }


_TYPE_COUNTERS = {
    EventType.LOGIN_ATTEMPT: "login_attempts",
    EventType.LOGIN_FAILURE: "failed_logins",
    EventType.LOGIN_SUCCESS: "successful_logins",
    EventType.SUSPICIOUS_ACTIVITY: "suspicious_activities",
}


class MetricsAggregator:
    """Derives rolling counters from every recorded event."""

    def __init__(self):
        self._metrics = SecurityMetrics()

    def update(self, event: SecurityEvent):
        metrics = self._metrics
        metrics.total_events += 1

        if event.severity is SecurityLevel.CRITICAL:
            metrics.critical_events += 1

        counter = _TYPE_COUNTERS.get(event.type)
        if counter:
            setattr(metrics, counter, getattr(metrics, counter) + 1)

        metrics.events_by_type[event.type.value] += 1
        metrics.events_by_severity[event.severity.value] += 1
        metrics.events_by_hour[str(event.timestamp.hour)] += 1

        endpoint = self._endpoint_of(event)
        if endpoint:
            metrics.events_by_endpoint[endpoint] += 1

        metrics.events_by_category[categorize(self._text_of(event))] += 1
        metrics.last_event = event.to_dict()

    def set_blocked_ips(self, count: int):
        self._metrics.blocked_ips = count

    def set_active_sessions(self, count: int):
        self._metrics.active_sessions = count

    def hourly_count(self, hour: int) -> int:
        return self._metrics.events_by_hour.get(str(hour), 0)

    def snapshot(self) -> SecurityMetrics:
        """Return an independent copy for reporting."""
        return copy.deepcopy(self._metrics)

    def restore(self, data: Dict[str, Any]):
        """Load counters previously produced by ``SecurityMetrics.to_dict``."""
        restored = SecurityMetrics(
            total_events=data.get("totalEvents", 0),
            critical_events=data.get("criticalEvents", 0),
            login_attempts=data.get("loginAttempts", 0),
            failed_logins=data.get("failedLogins", 0),
            successful_logins=data.get("successfulLogins", 0),
            suspicious_activities=data.get("suspiciousActivities", 0),
            last_event=data.get("lastEvent"),
        )
        for attr, key in (
            ("events_by_type", "eventsByType"),
            ("events_by_severity", "eventsBySeverity"),
            ("events_by_hour", "eventsByHour"),
            ("events_by_endpoint", "eventsByEndpoint"),
            ("events_by_category", "eventsByCategory"),
        ):
            getattr(restored, attr).update(data.get(key) or {})
        self._metrics = restored

    @staticmethod
    def _endpoint_of(event: SecurityEvent) -> Optional[str]:
        if event.url:
            return event.url
        for key in ("url", "endpoint", "path"):
            value = event.details.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    @staticmethod
    def _text_of(event: SecurityEvent) -> str:
        try:
            details = json.dumps(event.details, default=str)
        except (TypeError, ValueError):
            details = ""
        return f"{event.message or ''} {details}"
