"""
Security service layer: event store, detection, rate limiting and telemetry.
"""

from .security_engine import RequestDecision, SecurityEngine
from .security_events import EventOrigin, EventType, SecurityEvent, SecurityLevel
from .rate_limiting import RequestIdentity, SubscriptionPlan

__all__ = [
    "SecurityEngine",
    "RequestDecision",
    "SecurityEvent",
    "EventType",
    "EventOrigin",
    "SecurityLevel",
    "RequestIdentity",
    "SubscriptionPlan",
]
