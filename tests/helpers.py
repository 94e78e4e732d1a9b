"""
Test doubles and builders shared by the test modules.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aegis.core.config import Settings
from aegis.services.security_events import EventType, SecurityEvent, SecurityLevel


ADMIN_KEY = "test-admin-key"
START_TIME = 1_700_000_000.0


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def at(offset_seconds: float = 0.0) -> datetime:
    return datetime.fromtimestamp(START_TIME + offset_seconds, tz=timezone.utc)


def make_settings(**overrides) -> Settings:
    values: Dict[str, Any] = {
        "ADMIN_API_KEY": ADMIN_KEY,
        "RATE_LIMIT_STORAGE": "memory",
        "SNAPSHOT_PATH": None,
        "ALERT_WEBHOOK_URL": None,
        "ALERT_WEBHOOK_SECRET": None,
        "METRICS_BROADCAST_INTERVAL_SECONDS": 3600.0,
        "SESSION_SWEEP_INTERVAL_SECONDS": 3600.0,
        "RETENTION_SWEEP_INTERVAL_SECONDS": 3600.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_event(
    event_type: EventType = EventType.LOGIN_ATTEMPT,
    severity: SecurityLevel = SecurityLevel.LOW,
    ip: str = "192.0.2.10",
    timestamp: Optional[datetime] = None,
    **kwargs,
) -> SecurityEvent:
    return SecurityEvent(
        type=event_type,
        severity=severity,
        ip=ip,
        timestamp=timestamp or at(),
        **kwargs,
    )
