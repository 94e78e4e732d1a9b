"""
Security engine: composition root for event ingestion, edge decisions,
admin queries and live telemetry.

All state transitions below are plain synchronous methods; the only awaiting
path that touches shared counters is the rate limit store.
"""

import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from loguru import logger

from aegis.core.config import Settings, get_settings
from aegis.core.tasks import PeriodicTask
from aegis.services.alerting import AlertDispatcher
from aegis.services.ip_blocklist import BlockEntry, BlockSource, IPBlockList
from aegis.services.rate_limiting import (
    DEFAULT_TIERS,
    RateLimitDecision,
    RateLimitTier,
    RequestIdentity,
    TierEngine,
    build_counter_store,
    denial_payload,
)
from aegis.services.security_events import (
    EventOrigin,
    EventStore,
    EventType,
    SEVERITY_LOG_LEVELS,
    SecurityEvent,
    SecurityLevel,
    utc_from_timestamp,
)
from aegis.services.security_metrics import MetricsAggregator
from aegis.services.session_tracking import LoginAttemptTracker, SessionRecord, SessionTracker
from aegis.services.snapshots import SnapshotWriter
from aegis.services.telemetry import SendCallable, TelemetryBroadcaster
from aegis.services.threat_detection import SuspiciousActivityRecord, SuspiciousActivityTracker, ThreatDetector
from aegis.services.threat_patterns import DEFAULT_THREAT_PATTERNS, ThreatPattern


IP_BLOCKED_PAYLOAD = {
    "error": "ip_blocked",
    "message": "Your IP has been temporarily blocked due to suspicious activity.",
}

LOCKOUT_REASON = "Repeated failed login attempts"

ERROR_LEVELS = {
    "critical": SecurityLevel.CRITICAL,
    "error": SecurityLevel.HIGH,
    "warn": SecurityLevel.MEDIUM,
    "warning": SecurityLevel.MEDIUM,
    "info": SecurityLevel.LOW,
}

# Pseudo addresses that must never end up on the block list
UNBLOCKABLE_IPS = frozenset({"system", "unknown"})


@dataclass
class RequestDecision:
    """Edge verdict for one inbound request."""
    allowed: bool
    status_code: int = 200
    reason: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    rate_limit: Optional[RateLimitDecision] = None


class SecurityEngine:
    """Owns every piece of security state and exposes the operations on it."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        tiers: Sequence[RateLimitTier] = DEFAULT_TIERS,
        patterns: Sequence[ThreatPattern] = DEFAULT_THREAT_PATTERNS,
        counter_store=None,
        clock: Callable[[], float] = time.time,
        alert_dispatcher: Optional[AlertDispatcher] = None,
        snapshot_writer: Optional[SnapshotWriter] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        s = self.settings

        self.metrics = MetricsAggregator()
        self.events = EventStore(
            self.metrics,
            capacity=s.EVENT_STORE_CAPACITY,
            retention_seconds=s.RESOLVED_EVENT_RETENTION_SECONDS,
        )
        self.detector = ThreatDetector(patterns)
        self.suspicious = SuspiciousActivityTracker(
            threshold=s.SUSPICIOUS_REQUEST_THRESHOLD,
            window_seconds=s.SUSPICIOUS_WINDOW_SECONDS,
            ttl_seconds=s.SUSPICIOUS_RECORD_TTL_SECONDS,
        )
        self.login_attempts = LoginAttemptTracker(
            threshold=s.LOGIN_LOCKOUT_THRESHOLD,
            window_seconds=s.LOGIN_ATTEMPT_WINDOW_SECONDS,
        )
        self.sessions = SessionTracker(
            max_concurrent=s.MAX_CONCURRENT_SESSIONS,
            timeout_seconds=s.SESSION_TIMEOUT_SECONDS,
        )
        self.blocklist = IPBlockList()
        if counter_store is None:
            counter_store = build_counter_store(s.RATE_LIMIT_STORAGE, s.REDIS_URL)
        self.rate_limiter = TierEngine(tiers, store=counter_store, privileged_roles=s.PRIVILEGED_ROLES)
        self.telemetry = TelemetryBroadcaster(self.get_metrics, queue_size=s.OBSERVER_QUEUE_SIZE)
        self.alerts = alert_dispatcher or AlertDispatcher(
            critical_threshold=s.ALERT_CRITICAL_THRESHOLD,
            high_threshold=s.ALERT_HIGH_THRESHOLD,
            hourly_limit=s.ALERT_HOURLY_LIMIT,
            webhook_url=s.ALERT_WEBHOOK_URL,
            webhook_secret=s.ALERT_WEBHOOK_SECRET,
            timeout=s.ALERT_WEBHOOK_TIMEOUT,
        )
        if snapshot_writer is None and s.SNAPSHOT_PATH:
            snapshot_writer = SnapshotWriter(s.SNAPSHOT_PATH)
        self.snapshots = snapshot_writer

        self._tasks = [
            PeriodicTask("session-sweep", s.SESSION_SWEEP_INTERVAL_SECONDS, self.sweep_sessions),
            PeriodicTask("retention-sweep", s.RETENTION_SWEEP_INTERVAL_SECONDS, self.sweep_retention),
            PeriodicTask("metrics-broadcast", s.METRICS_BROADCAST_INTERVAL_SECONDS, self.broadcast_metrics),
        ]
        if self.snapshots is not None:
            self._tasks.append(
                PeriodicTask("snapshot", s.SNAPSHOT_INTERVAL_SECONDS, self.save_snapshot)
            )
        self.started = False

    def now(self) -> datetime:
        return utc_from_timestamp(self.clock())

    # Lifecycle

    async def start(self):
        if self.started:
            return
        if self.snapshots is not None:
            await self.load_snapshot()
        await self.alerts.start()
        for task in self._tasks:
            task.start()
        self.started = True
        logger.info("Security engine started")

    async def stop(self):
        if not self.started:
            return
        for task in self._tasks:
            await task.stop()
        await self.telemetry.close()
        await self.alerts.stop()
        if self.snapshots is not None:
            await self.save_snapshot()
        await self.rate_limiter.close()
        self.started = False
        logger.info("Security engine stopped")

    # Recording

    def _record(self, event: SecurityEvent) -> str:
        """Store, log, broadcast and alert on a single event."""
        event_id = self.events.record(event)
        stored = self.events.get(event_id) or event

        logger.log(
            SEVERITY_LOG_LEVELS[stored.severity],
            f"Security event: {stored.type.value} from {stored.ip} "
            f"(id={event_id}, severity={stored.severity.value}, count={stored.count})"
        )
        self.telemetry.publish_event(stored)
        self.alerts.evaluate(stored, self.metrics.hourly_count(stored.timestamp.hour))
        return event_id

    def _ingest(self, event: SecurityEvent, session_id: Optional[str] = None) -> str:
        event_id = self._record(event)

        if event.type is EventType.LOGIN_FAILURE:
            self._handle_failed_login(event)
        elif event.type is EventType.LOGIN_SUCCESS:
            self._handle_successful_login(event, session_id)
        elif event.type is EventType.SUSPICIOUS_ACTIVITY:
            self._auto_block(event, BlockSource.SUSPICIOUS_ACTIVITY)

        for finding in self.detector.inspect(event):
            self._record(finding)
            self._auto_block(finding, BlockSource.THREAT_DETECTION)

        return event_id

    def _auto_block(self, event: SecurityEvent, source: BlockSource):
        if not self.settings.AUTO_BLOCK_ON_HIGH_SEVERITY:
            return
        if event.severity not in (SecurityLevel.HIGH, SecurityLevel.CRITICAL):
            return
        if event.ip in UNBLOCKABLE_IPS:
            return
        reason = event.details.get("threat_type") or event.details.get("reason") or "Suspicious activity"
        if self.blocklist.add(event.ip, str(reason), source, self.now()):
            logger.warning(f"IP {event.ip} blocked ({source.value}): {reason}")

    def _handle_failed_login(self, event: SecurityEvent):
        ip = event.ip
        record = self.login_attempts.record_failure(ip, event.timestamp)
        if record.count < self.login_attempts.threshold:
            return
        if ip in UNBLOCKABLE_IPS or self.blocklist.contains(ip):
            return

        self.blocklist.add(ip, LOCKOUT_REASON, BlockSource.LOGIN_LOCKOUT, event.timestamp)
        logger.warning(f"IP {ip} blocked after {record.count} failed login attempts")
        self._record(SecurityEvent(
            type=EventType.SUSPICIOUS_ACTIVITY,
            severity=SecurityLevel.HIGH,
            ip=ip,
            timestamp=event.timestamp,
            origin=EventOrigin.DERIVED,
            email=event.email,
            user_agent=event.user_agent,
            details={
                "reason": LOCKOUT_REASON,
                "attemptCount": record.count,
                "blocked": True,
            },
        ))

    def _handle_successful_login(self, event: SecurityEvent, session_id: Optional[str]):
        self.login_attempts.clear(event.ip)
        if not event.user_id:
            return

        others = [sid for sid in self.sessions.sessions_for(event.user_id) if sid != session_id]
        existing = len(others)
        if existing > 0:
            self._record(SecurityEvent(
                type=EventType.MULTIPLE_SESSIONS,
                severity=SecurityLevel.MEDIUM,
                ip=event.ip,
                timestamp=event.timestamp,
                origin=EventOrigin.DERIVED,
                user_id=event.user_id,
                email=event.email,
                user_agent=event.user_agent,
                details={
                    "reason": "Multiple concurrent sessions detected",
                    "sessionCount": existing + 1,
                },
            ))

        evicted = self.sessions.add(event.user_id, session_id or uuid.uuid4().hex, event.timestamp)
        if evicted:
            logger.info(f"Evicted sessions {evicted} for user {event.user_id} (concurrency limit)")

    # Ingestion API

    def report_event(
        self,
        event_type: Union[EventType, str],
        severity: Union[SecurityLevel, str],
        ip: str,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        """Record a caller-reported event and run it through detection."""
        event = SecurityEvent(
            type=EventType(event_type),
            severity=SecurityLevel(severity),
            ip=ip or "unknown",
            timestamp=self.now(),
            details=dict(details or {}),
            user_id=str(user_id) if user_id is not None else None,
            email=email,
            user_agent=user_agent,
            location=location,
        )
        return self._ingest(event, session_id=session_id)

    def report_error(
        self,
        message: str,
        level: str = "error",
        stack: Optional[str] = None,
        url: Optional[str] = None,
        method: Optional[str] = None,
        user_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Record an application error; repeats of the same error are counted, not duplicated."""
        severity = ERROR_LEVELS.get(level.lower(), SecurityLevel.HIGH)
        details = dict(context or {})
        details.setdefault("level", level.lower())
        event = SecurityEvent(
            type=EventType.APPLICATION_ERROR,
            severity=severity,
            ip=ip or "system",
            timestamp=self.now(),
            details=details,
            user_id=str(user_id) if user_id is not None else None,
            user_agent=user_agent,
            message=message,
            stack=stack,
            url=url,
            method=method,
        )
        return self._ingest(event)

    def report_login_attempt(
        self,
        ip: str,
        email: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        payload = {
            "method": "POST",
            "path": self.settings.LOGIN_PATH,
            "userAgent": user_agent,
        }
        payload.update(details or {})
        return self.report_event(
            EventType.LOGIN_ATTEMPT,
            SecurityLevel.LOW,
            ip,
            details=payload,
            email=email,
            user_agent=user_agent,
        )

    def report_login_result(
        self,
        ip: str,
        success: bool,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        payload: Dict[str, Any] = {"userAgent": user_agent}
        if not success:
            payload["reason"] = "Invalid credentials"
        payload.update(details or {})
        return self.report_event(
            EventType.LOGIN_SUCCESS if success else EventType.LOGIN_FAILURE,
            SecurityLevel.LOW if success else SecurityLevel.MEDIUM,
            ip,
            details=payload,
            user_id=user_id,
            email=email,
            user_agent=user_agent,
            session_id=session_id,
        )

    def track_session_activity(self, session_id: str, user_id: Optional[str] = None) -> bool:
        """Refresh a session; evicted sessions stay untracked."""
        if self.sessions.is_evicted(session_id):
            return False
        now = self.now()
        if self.sessions.touch(session_id, now):
            return True
        if user_id is None:
            return False
        evicted = self.sessions.add(str(user_id), session_id, now)
        if evicted:
            logger.info(f"Evicted sessions {evicted} for user {user_id} (concurrency limit)")
        return True

    def remove_session(self, session_id: str) -> bool:
        return self.sessions.remove(session_id) is not None

    # Edge API

    async def check_request(
        self,
        ip: str,
        path: str,
        identity: Optional[RequestIdentity] = None,
        user_agent: Optional[str] = None,
    ) -> RequestDecision:
        """Decide whether a request may proceed; blocked requests record nothing."""
        if self.blocklist.contains(ip):
            logger.warning(f"Blocked IP access attempt: {ip} {path}")
            return RequestDecision(
                allowed=False,
                status_code=403,
                reason="ip_blocked",
                payload=dict(IP_BLOCKED_PAYLOAD),
            )

        if self.suspicious.observe(ip, user_agent or "unknown", path, self.now()):
            if self._escalate_burst(ip, user_agent, path):
                return RequestDecision(
                    allowed=False,
                    status_code=403,
                    reason="ip_blocked",
                    payload=dict(IP_BLOCKED_PAYLOAD),
                )

        identity = identity or RequestIdentity(ip=ip)
        tier = self.rate_limiter.classify(path)
        decision = await self.rate_limiter.check_and_consume(identity, tier, self.clock())
        if not decision.allowed:
            return RequestDecision(
                allowed=False,
                status_code=429,
                reason="rate_limit_exceeded",
                payload=denial_payload(tier),
                headers=decision.headers(),
                rate_limit=decision,
            )
        return RequestDecision(allowed=True, headers=decision.headers(), rate_limit=decision)

    def _escalate_burst(self, ip: str, user_agent: Optional[str], path: str) -> bool:
        now = self.now()
        blocked = False
        if ip not in UNBLOCKABLE_IPS:
            blocked = self.blocklist.add(ip, "Request burst", BlockSource.SUSPICIOUS_ACTIVITY, now)
        logger.error(f"IP {ip} exceeded request burst threshold on {path}")
        self._record(SecurityEvent(
            type=EventType.SUSPICIOUS_ACTIVITY,
            severity=SecurityLevel.HIGH,
            ip=ip,
            timestamp=now,
            origin=EventOrigin.DERIVED,
            user_agent=user_agent,
            details={
                "reason": "Request burst",
                "endpoint": path,
                "threshold": self.suspicious.threshold,
                "windowSeconds": int(self.suspicious.window.total_seconds()),
                "blocked": blocked,
            },
        ))
        return blocked

    async def release_request(self, decision: RequestDecision, status_code: int) -> bool:
        if decision.rate_limit is None:
            return False
        return await self.rate_limiter.release(decision.rate_limit, status_code)

    # Query / control API

    def _refresh_gauges(self):
        self.metrics.set_blocked_ips(len(self.blocklist))
        self.metrics.set_active_sessions(len(self.sessions))

    def get_metrics(self) -> Dict[str, Any]:
        self._refresh_gauges()
        return self.metrics.snapshot().to_dict()

    def get_recent_events(self, limit: int = 50) -> List[SecurityEvent]:
        return self.events.list(limit=limit)

    def get_events_by_type(self, event_type: Union[EventType, str], limit: int = 50) -> List[SecurityEvent]:
        return self.events.list(limit=limit, event_type=EventType(event_type))

    def get_event(self, event_id: str) -> Optional[SecurityEvent]:
        return self.events.get(event_id)

    def resolve_event(self, event_id: str) -> bool:
        return self.events.mark_resolved(event_id, self.now())

    def get_health_report(self) -> Dict[str, Any]:
        now = self.now()
        recent = self.events.since(now - timedelta(hours=1))
        critical = [event for event in recent if event.severity is SecurityLevel.CRITICAL]
        high = [event for event in recent if event.severity is SecurityLevel.HIGH]
        hourly = self.metrics.hourly_count(now.hour)
        metrics = self.get_metrics()

        recommendations = []
        if critical:
            status = "critical"
            summary = f"{len(critical)} critical events in the last hour"
            recommendations.append("Address critical events immediately")
        elif len(high) > self.settings.HEALTH_HIGH_SEVERITY_WARNING:
            status = "warning"
            summary = f"{len(high)} high severity events in the last hour"
            recommendations.append("Review high severity events")
        elif hourly > self.settings.ALERT_HOURLY_LIMIT / 2:
            status = "warning"
            summary = f"{hourly} events in the current hour"
            recommendations.append("Monitor event patterns closely")
        else:
            status = "healthy"
            summary = "System is operating normally"

        top_category = _top_entry(metrics["eventsByCategory"])
        if top_category and top_category[1] > 10:
            recommendations.append(f"Address frequent {top_category[0]} events")
        top_endpoint = _top_entry(metrics["eventsByEndpoint"])
        if top_endpoint and top_endpoint[1] > 5:
            recommendations.append(f"Investigate endpoint: {top_endpoint[0]}")

        return {
            "status": status,
            "summary": summary,
            "recommendations": recommendations,
            "metrics": metrics,
            "recentEvents": len(recent),
            "criticalEvents": len(critical),
            "highPriorityEvents": len(high),
            "blockedIPs": len(self.blocklist),
            "activeSessions": len(self.sessions),
            "timestamp": now.isoformat(),
        }

    def list_blocked_ips(self) -> List[str]:
        return self.blocklist.list()

    def blocked_ip_entries(self) -> List[BlockEntry]:
        return self.blocklist.entries()

    def block_ip(self, ip: str, reason: str = "Manually blocked by admin") -> bool:
        blocked = self.blocklist.add(ip, reason, BlockSource.ADMIN, self.now())
        if blocked:
            logger.info(f"IP address {ip} manually blocked: {reason}")
        else:
            logger.info(f"IP address {ip} is already blocked")
        return blocked

    def unblock_ip(self, ip: str) -> bool:
        """Unblock ``ip`` and forget its failed logins and burst history."""
        removed = self.blocklist.remove(ip)
        self.login_attempts.clear(ip)
        self.suspicious.forget(ip)
        if removed:
            logger.info(f"IP address {ip} unblocked")
        return removed

    def list_suspicious_activity(self, limit: int = 100) -> List[SuspiciousActivityRecord]:
        return self.suspicious.records(limit)

    def get_rate_limit_tiers(self) -> List[Dict[str, Any]]:
        return self.rate_limiter.describe_tiers()

    def get_rate_limit_statistics(self) -> Dict[str, Any]:
        now = self.now()
        records = self.suspicious.records()
        recent = [record for record in records if record.last_seen > now - timedelta(hours=24)]

        offenders: Dict[str, Dict[str, Any]] = {}
        for record in recent:
            entry = offenders.setdefault(
                record.ip,
                {"ip": record.ip, "attempts": 0, "endpoints": set(), "userAgents": set()},
            )
            entry["attempts"] += record.attempts
            entry["endpoints"].add(record.endpoint)
            entry["userAgents"].add(record.user_agent)

        top_offenders = sorted(offenders.values(), key=lambda entry: entry["attempts"], reverse=True)[:10]
        return {
            "totalBlockedIPs": len(self.blocklist),
            "totalSuspiciousActivities": len(records),
            "recentActivities24h": len(recent),
            "configuredTiers": len(self.rate_limiter.tiers),
            "tiers": self.rate_limiter.statistics_dict(),
            "topOffenders": [
                {
                    "ip": entry["ip"],
                    "attempts": entry["attempts"],
                    "endpoints": sorted(entry["endpoints"]),
                    "userAgents": sorted(entry["userAgents"]),
                }
                for entry in top_offenders
            ],
            "lastUpdated": now.isoformat(),
        }

    def get_active_session_count(self, user_id: str) -> int:
        return self.sessions.active_session_count(str(user_id))

    def list_sessions(self, user_id: str) -> List[SessionRecord]:
        records = (self.sessions.get(session_id) for session_id in self.sessions.sessions_for(str(user_id)))
        return [record for record in records if record is not None]

    def force_logout_all_sessions(self, user_id: str) -> int:
        removed = self.sessions.force_logout_all(str(user_id))
        if removed:
            logger.info(f"Force logged out {len(removed)} sessions for user {user_id}")
        return len(removed)

    # Telemetry

    async def subscribe(self, send: SendCallable) -> str:
        return await self.telemetry.subscribe(send)

    def unsubscribe(self, observer_id: str) -> bool:
        return self.telemetry.unsubscribe(observer_id)

    # Periodic work

    def sweep_sessions(self) -> int:
        """Expire idle sessions, recording a session_timeout event for each."""
        now = self.now()
        expired = self.sessions.sweep_timeouts(now)
        for record in expired:
            self._record(SecurityEvent(
                type=EventType.SESSION_TIMEOUT,
                severity=SecurityLevel.LOW,
                ip="system",
                timestamp=now,
                origin=EventOrigin.DERIVED,
                user_id=record.user_id,
                details={
                    "sessionId": record.session_id,
                    "duration": (now - record.started_at).total_seconds(),
                    "lastActivity": record.last_activity.isoformat(),
                },
            ))
        return len(expired)

    async def sweep_retention(self) -> Dict[str, int]:
        now = self.now()
        result = {
            "events": self.events.sweep(now),
            "suspicious": self.suspicious.cleanup(now),
            "counters": await self.rate_limiter.store.cleanup(self.clock()),
        }
        logger.info(
            f"Retention sweep completed: {result} "
            f"(events={len(self.events)}, blocked_ips={len(self.blocklist)})"
        )
        return result

    def broadcast_metrics(self) -> int:
        return self.telemetry.publish_metrics()

    async def save_snapshot(self) -> bool:
        if self.snapshots is None:
            return False
        return await self.snapshots.save(self.events.all(), self.get_metrics())

    async def load_snapshot(self) -> int:
        if self.snapshots is None:
            return 0
        events, metrics = await self.snapshots.load()
        loaded = self.events.load(events)
        if metrics:
            self.metrics.restore(metrics)
        if loaded or metrics:
            logger.info(f"Restored {loaded} security events from snapshot")
        return loaded


def _top_entry(counts: Dict[str, int]):
    if not counts:
        return None
    return Counter(counts).most_common(1)[0]
