"""
Security tests for request-edge enforcement: block list, bursts, tiered
quotas, login monitoring and fail-open behavior.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from aegis.main import create_app
from aegis.services.security_engine import SecurityEngine
from aegis.services.security_events import EventType
from tests.helpers import FakeClock, make_settings


ATTACKER = "203.0.113.77"


def build_app(engine: SecurityEngine) -> FastAPI:
    """Application with a few host routes and a fake upstream auth layer."""
    app = create_app(settings=engine.settings, engine=engine)

    @app.post("/api/auth/login")
    async def login(request: Request, ok: int = 0):
        if not ok:
            return JSONResponse(status_code=401, content={"detail": "Invalid credentials"})
        request.state.user_id = "42"
        request.state.session_id = f"sess-{request.headers.get('X-Session', '1')}"
        return {"token": "abc"}

    @app.post("/api/auth/register")
    async def register():
        return {"registered": True}

    @app.get("/api/things")
    async def things():
        return {"ok": True}

    @app.get("/public")
    async def public():
        return {"ok": True}

    @app.middleware("http")
    async def fake_auth(request: Request, call_next):
        role = request.headers.get("X-Test-Role")
        if role:
            request.state.user_id = "admin-1"
            request.state.user_role = role
        plan = request.headers.get("X-Test-Plan")
        if plan:
            request.state.user_id = request.headers.get("X-Test-User", "customer-1")
            request.state.subscription_plan = plan
            request.state.subscription_active = True
        return await call_next(request)

    return app


def from_ip(ip: str = ATTACKER, **headers):
    return {"X-Forwarded-For": ip, **headers}


@pytest.fixture
def edge_engine():
    return SecurityEngine(make_settings(), clock=FakeClock())


@pytest.fixture
def edge_client(edge_engine):
    with TestClient(build_app(edge_engine)) as client:
        yield client


@pytest.mark.security
class TestBlockList:

    def test_blocked_ip_gets_403_without_side_effects(self, edge_client, edge_engine):
        edge_engine.block_ip(ATTACKER, "test")

        response = edge_client.get("/api/things", headers=from_ip())

        assert response.status_code == 403
        assert response.json() == {
            "error": "ip_blocked",
            "message": "Your IP has been temporarily blocked due to suspicious activity.",
        }
        assert len(edge_engine.events) == 0
        assert edge_engine.rate_limiter.statistics["api_access"].checked == 0

    def test_blocking_precedes_rate_limiting(self, edge_client, edge_engine):
        for _ in range(5):
            edge_client.post("/api/auth/register", headers=from_ip())
        edge_engine.block_ip(ATTACKER, "test")

        assert edge_client.post("/api/auth/register", headers=from_ip()).status_code == 403

    def test_other_ips_unaffected(self, edge_client, edge_engine):
        edge_engine.block_ip(ATTACKER, "test")

        assert edge_client.get("/api/things", headers=from_ip("198.51.100.1")).status_code == 200

    def test_forwarded_chain_uses_first_hop(self, edge_client, edge_engine):
        edge_engine.block_ip(ATTACKER, "test")

        response = edge_client.get("/api/things", headers={"X-Forwarded-For": f"{ATTACKER}, 10.0.0.1"})

        assert response.status_code == 403


@pytest.mark.security
class TestRateLimiting:

    def test_authentication_tier(self, edge_client):
        statuses = [edge_client.post("/api/auth/register", headers=from_ip()).status_code for _ in range(6)]

        assert statuses == [200] * 5 + [429]

    def test_denial_payload_and_headers(self, edge_client):
        for _ in range(5):
            ok = edge_client.post("/api/auth/register", headers=from_ip())
        denied = edge_client.post("/api/auth/register", headers=from_ip())

        assert ok.headers["RateLimit-Remaining"] == "0"
        assert denied.json() == {
            "error": "rate_limit_exceeded",
            "message": "Too many authentication attempts. Please try again in 15 minutes.",
            "tier": "authentication",
            "retryAfter": 900,
        }
        assert denied.headers["Retry-After"] == "900"

    def test_enterprise_plan_scales_quota(self, edge_client):
        headers = from_ip(**{"X-Test-Plan": "enterprise", "X-Test-User": "big-co"})

        statuses = [edge_client.post("/api/auth/register", headers=headers).status_code for _ in range(26)]

        assert statuses == [200] * 25 + [429]

    def test_quota_is_per_user_not_per_ip(self, edge_client):
        for _ in range(5):
            edge_client.post("/api/auth/register", headers=from_ip(**{"X-Test-Plan": "free", "X-Test-User": "a"}))

        other_user = edge_client.post(
            "/api/auth/register",
            headers=from_ip(**{"X-Test-Plan": "free", "X-Test-User": "b"}),
        )
        assert other_user.status_code == 200

    def test_privileged_role_skips_quota(self, edge_client):
        headers = from_ip(**{"X-Test-Role": "super_admin"})

        statuses = [edge_client.post("/api/auth/register", headers=headers).status_code for _ in range(8)]

        assert statuses == [200] * 8

    def test_untiered_paths_are_not_limited(self, edge_client):
        response = edge_client.get("/public", headers=from_ip())

        assert response.status_code == 200
        assert "RateLimit-Limit" not in response.headers
        assert response.headers["X-Frame-Options"] == "DENY"


@pytest.mark.security
class TestBurstDetection:

    def test_burst_blocks_ip_even_for_privileged_role(self):
        engine = SecurityEngine(make_settings(SUSPICIOUS_REQUEST_THRESHOLD=3), clock=FakeClock())
        headers = from_ip(**{"X-Test-Role": "super_admin"})

        with TestClient(build_app(engine)) as client:
            statuses = [client.get("/public", headers=headers).status_code for _ in range(5)]

        assert statuses == [200, 200, 200, 403, 403]
        assert ATTACKER in engine.list_blocked_ips()
        assert len(engine.get_events_by_type(EventType.SUSPICIOUS_ACTIVITY)) == 1


@pytest.mark.security
class TestLoginMonitoring:

    def test_failed_logins_are_recorded(self, edge_client, edge_engine):
        for _ in range(3):
            assert edge_client.post("/api/auth/login", headers=from_ip()).status_code == 401

        assert edge_engine.login_attempts.get(ATTACKER).count == 3
        metrics = edge_engine.get_metrics()
        assert metrics["loginAttempts"] == 3
        assert metrics["failedLogins"] == 3

    def test_login_tier_trips_before_lockout(self, edge_client, edge_engine):
        statuses = [edge_client.post("/api/auth/login", headers=from_ip()).status_code for _ in range(6)]

        assert statuses == [401] * 5 + [429]
        assert edge_engine.login_attempts.get(ATTACKER).count == 5
        assert ATTACKER not in edge_engine.list_blocked_ips()

    def test_successful_login_tracks_session(self, edge_client, edge_engine):
        edge_client.post("/api/auth/login", headers=from_ip())

        response = edge_client.post("/api/auth/login", params={"ok": 1}, headers=from_ip())

        assert response.status_code == 200
        assert edge_engine.get_active_session_count("42") == 1
        assert edge_engine.sessions.sessions_for("42") == ["sess-1"]
        assert edge_engine.login_attempts.get(ATTACKER) is None
        assert edge_engine.get_metrics()["successfulLogins"] == 1

    def test_second_login_flags_multiple_sessions(self, edge_client, edge_engine):
        edge_client.post("/api/auth/login", params={"ok": 1}, headers=from_ip(**{"X-Session": "1"}))
        edge_client.post("/api/auth/login", params={"ok": 1}, headers=from_ip(**{"X-Session": "2"}))

        assert edge_engine.get_active_session_count("42") == 2
        events = edge_engine.get_events_by_type(EventType.MULTIPLE_SESSIONS)
        assert len(events) == 1
        assert events[0].severity.value == "medium"

    def test_scanner_user_agent_is_flagged(self, edge_client, edge_engine):
        edge_client.post("/api/auth/login", headers=from_ip(**{"User-Agent": "sqlmap/1.7.2#stable"}))

        findings = edge_engine.get_events_by_type(EventType.SUSPICIOUS_ACTIVITY)
        assert findings
        assert {finding.details["threat_type"] for finding in findings} == {"Scanner User Agent"}
        assert ATTACKER not in edge_engine.list_blocked_ips()


@pytest.mark.security
class TestFailOpen:

    def test_engine_failure_lets_request_through(self, edge_client, edge_engine, monkeypatch):
        monkeypatch.setattr(edge_engine, "check_request", AsyncMock(side_effect=RuntimeError("engine down")))

        response = edge_client.get("/api/things", headers=from_ip())

        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_monitoring_failure_does_not_break_login(self, edge_client, edge_engine, monkeypatch):
        monkeypatch.setattr(edge_engine, "report_login_attempt", lambda *args, **kwargs: 1 / 0)

        response = edge_client.post("/api/auth/login", headers=from_ip())

        assert response.status_code == 401

    def test_options_requests_bypass_security(self, edge_client, edge_engine):
        edge_engine.block_ip(ATTACKER, "test")

        response = edge_client.options(
            "/api/things",
            headers=from_ip(**{"Origin": "https://dashboard.example.com", "Access-Control-Request-Method": "GET"}),
        )

        assert response.status_code == 200
