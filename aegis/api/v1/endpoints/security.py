"""
Security admin, ingestion and live feed endpoints.
"""

import hmac
import ipaddress
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from loguru import logger

from aegis.core.config import get_settings
from aegis.core.dependencies import get_security_engine, require_admin
from aegis.schemas.security import (
    ErrorReport,
    IPBlockRequest,
    LoginAttemptReport,
    LoginResultReport,
    SecurityEventCreate,
    SessionActivityReport,
)
from aegis.services.security_engine import SecurityEngine
from aegis.services.security_events import EventType
from aegis.utils.exceptions import ConflictError, NotFoundError, ValidationError

router = APIRouter(dependencies=[Depends(require_admin)])
websocket_router = APIRouter()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _validate_ip(ip: str) -> str:
    try:
        return str(ipaddress.ip_address(ip.strip()))
    except ValueError:
        raise ValidationError("Invalid IP address format", field="ip", details={"ip": ip})


# Query / control

@router.get("/metrics")
async def get_metrics(engine: SecurityEngine = Depends(get_security_engine)):
    """Get current security metrics."""
    return {"success": True, "metrics": engine.get_metrics(), "timestamp": _timestamp()}


@router.get("/events")
async def get_recent_events(
    limit: int = Query(50, ge=1, le=1000),
    engine: SecurityEngine = Depends(get_security_engine),
):
    """Get the most recent security events, newest first."""
    events = engine.get_recent_events(limit)
    return {"events": [event.to_dict() for event in events], "count": len(events)}


@router.get("/events/type/{event_type}")
async def get_events_by_type(
    event_type: EventType,
    limit: int = Query(50, ge=1, le=1000),
    engine: SecurityEngine = Depends(get_security_engine),
):
    events = engine.get_events_by_type(event_type, limit)
    return {"type": event_type.value, "events": [event.to_dict() for event in events], "count": len(events)}


@router.get("/events/{event_id}")
async def get_event(event_id: str, engine: SecurityEngine = Depends(get_security_engine)):
    event = engine.get_event(event_id)
    if event is None:
        raise NotFoundError(f"Security event {event_id} not found")
    return event.to_dict()


@router.post("/events/{event_id}/resolve")
async def resolve_event(
    event_id: str,
    admin: str = Depends(require_admin),
    engine: SecurityEngine = Depends(get_security_engine),
):
    if not engine.resolve_event(event_id):
        raise NotFoundError(f"Security event {event_id} not found")
    logger.info(f"Security event {event_id} resolved by {admin}")
    return {"success": True, "eventId": event_id, "timestamp": _timestamp()}


@router.get("/health")
async def get_security_health(engine: SecurityEngine = Depends(get_security_engine)):
    """Get the security health report for the last hour."""
    return engine.get_health_report()


@router.get("/blocked-ips")
async def get_blocked_ips(engine: SecurityEngine = Depends(get_security_engine)):
    blocked = engine.list_blocked_ips()
    return {
        "success": True,
        "blockedIPs": blocked,
        "entries": [entry.to_dict() for entry in engine.blocked_ip_entries()],
        "count": len(blocked),
        "timestamp": _timestamp(),
    }


@router.post("/blocked-ips")
async def block_ip(
    request: IPBlockRequest,
    admin: str = Depends(require_admin),
    engine: SecurityEngine = Depends(get_security_engine),
):
    """Block an IP address manually."""
    ip = _validate_ip(request.ip)
    if not engine.block_ip(ip, request.reason):
        raise ConflictError(f"IP address {ip} is already blocked", details={"ip": ip})
    logger.info(f"IP address {ip} blocked by {admin}")
    return {
        "success": True,
        "message": f"IP address {ip} has been blocked",
        "ip": ip,
        "reason": request.reason,
        "timestamp": _timestamp(),
    }


@router.delete("/blocked-ips/{ip}")
async def unblock_ip(
    ip: str,
    admin: str = Depends(require_admin),
    engine: SecurityEngine = Depends(get_security_engine),
):
    """Unblock an IP address."""
    ip = _validate_ip(ip)
    if not engine.unblock_ip(ip):
        raise NotFoundError(f"IP address {ip} was not blocked", details={"ip": ip})
    logger.info(f"IP address {ip} unblocked by {admin}")
    return {
        "success": True,
        "message": f"IP address {ip} has been unblocked",
        "ip": ip,
        "timestamp": _timestamp(),
    }


@router.get("/suspicious-activities")
async def get_suspicious_activities(
    limit: int = Query(100, ge=1, le=1000),
    engine: SecurityEngine = Depends(get_security_engine),
):
    activities = engine.list_suspicious_activity(limit)
    return {
        "success": True,
        "activities": [record.to_dict() for record in activities],
        "count": len(activities),
        "timestamp": _timestamp(),
    }


@router.get("/rate-limits/tiers")
async def get_rate_limit_tiers(engine: SecurityEngine = Depends(get_security_engine)):
    return {"success": True, "config": engine.get_rate_limit_tiers(), "timestamp": _timestamp()}


@router.get("/rate-limits/statistics")
async def get_rate_limit_statistics(engine: SecurityEngine = Depends(get_security_engine)):
    return {"success": True, "statistics": engine.get_rate_limit_statistics()}


# Ingestion

@router.post("/events", status_code=status.HTTP_201_CREATED)
async def report_event(
    report: SecurityEventCreate,
    engine: SecurityEngine = Depends(get_security_engine),
):
    """Record a security event reported by a collaborator."""
    event_id = engine.report_event(
        report.type,
        report.severity,
        report.ip,
        details=report.details,
        user_id=report.user_id,
        email=report.email,
        user_agent=report.user_agent,
        location=report.location,
    )
    return {"success": True, "eventId": event_id}


@router.post("/errors", status_code=status.HTTP_201_CREATED)
async def report_error(report: ErrorReport, engine: SecurityEngine = Depends(get_security_engine)):
    error_id = engine.report_error(
        report.message,
        level=report.level,
        stack=report.stack,
        url=report.url,
        method=report.method,
        user_id=report.user_id,
        ip=report.ip,
        user_agent=report.user_agent,
        context=report.context,
    )
    return {"success": True, "errorId": error_id}


@router.post("/login-attempts", status_code=status.HTTP_201_CREATED)
async def report_login_attempt(
    report: LoginAttemptReport,
    engine: SecurityEngine = Depends(get_security_engine),
):
    event_id = engine.report_login_attempt(report.ip, email=report.email, user_agent=report.user_agent)
    return {"success": True, "eventId": event_id}


@router.post("/login-results", status_code=status.HTTP_201_CREATED)
async def report_login_result(
    report: LoginResultReport,
    engine: SecurityEngine = Depends(get_security_engine),
):
    event_id = engine.report_login_result(
        report.ip,
        report.success,
        user_id=report.user_id,
        email=report.email,
        user_agent=report.user_agent,
        session_id=report.session_id,
    )
    return {"success": True, "eventId": event_id, "blocked": report.ip in engine.list_blocked_ips()}


@router.post("/sessions/activity")
async def track_session_activity(
    report: SessionActivityReport,
    engine: SecurityEngine = Depends(get_security_engine),
):
    tracked = engine.track_session_activity(report.session_id, report.user_id)
    return {"success": True, "tracked": tracked}


@router.delete("/sessions/{session_id}")
async def remove_session(session_id: str, engine: SecurityEngine = Depends(get_security_engine)):
    if not engine.remove_session(session_id):
        raise NotFoundError(f"Session {session_id} is not tracked")
    return {"success": True, "sessionId": session_id}


@router.get("/users/{user_id}/sessions")
async def get_active_sessions(user_id: str, engine: SecurityEngine = Depends(get_security_engine)):
    return {
        "userId": user_id,
        "activeSessions": engine.get_active_session_count(user_id),
        "sessions": [record.to_dict() for record in engine.list_sessions(user_id)],
    }


@router.delete("/users/{user_id}/sessions")
async def force_logout_all_sessions(
    user_id: str,
    admin: str = Depends(require_admin),
    engine: SecurityEngine = Depends(get_security_engine),
):
    removed = engine.force_logout_all_sessions(user_id)
    logger.info(f"{admin} force logged out {removed} sessions for user {user_id}")
    return {"success": True, "userId": user_id, "removed": removed}


# Live feed

def _websocket_authorized(websocket: WebSocket) -> bool:
    settings = getattr(websocket.app.state, "settings", None) or get_settings()
    role = getattr(websocket.state, "user_role", None)
    if role is not None and role in settings.PRIVILEGED_ROLES:
        return True
    key = websocket.headers.get("X-Admin-Key") or websocket.query_params.get("admin_key")
    return bool(key and settings.ADMIN_API_KEY and hmac.compare_digest(key, settings.ADMIN_API_KEY))


@websocket_router.websocket("/ws")
async def security_feed(websocket: WebSocket):
    """Stream security events and periodic metrics to a dashboard."""
    engine = getattr(websocket.app.state, "security_engine", None)
    if engine is None or not _websocket_authorized(websocket):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    observer_id = await engine.subscribe(websocket.send_json)
    try:
        while True:
            # Client messages are ignored; receiving detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        engine.unsubscribe(observer_id)
