"""
Integration tests for the security admin, ingestion and live feed API.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from aegis.services.security_events import EventType
from tests.helpers import ADMIN_KEY


API = "/api/v1/security"


@pytest.mark.integration
class TestAdminAuthentication:

    def test_missing_key_is_rejected(self, client):
        response = client.get(f"{API}/metrics")

        assert response.status_code == 401
        assert response.json()["error_code"] == "AUTHENTICATION_ERROR"

    def test_wrong_key_is_forbidden(self, client):
        response = client.get(f"{API}/metrics", headers={"X-Admin-Key": "nope"})

        assert response.status_code == 403
        assert response.json()["error_code"] == "AUTHORIZATION_ERROR"

    def test_privileged_role_from_upstream_auth(self, app: FastAPI):
        @app.middleware("http")
        async def fake_auth(request, call_next):
            request.state.user_id = "1"
            request.state.user_role = "super_admin"
            return await call_next(request)

        with TestClient(app) as client:
            response = client.get(f"{API}/metrics")

        assert response.status_code == 200

    def test_empty_configured_key_rejects_everything(self, app: FastAPI):
        app.state.settings = app.state.settings.model_copy(update={"ADMIN_API_KEY": ""})

        with TestClient(app) as client:
            response = client.get(f"{API}/metrics", headers={"X-Admin-Key": ""})

        assert response.status_code == 403


@pytest.mark.integration
class TestQueryEndpoints:

    def test_health_check_bypasses_security(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "aegis-security-engine"}
        assert "X-Request-ID" in response.headers

    def test_metrics(self, client, admin_headers):
        response = client.get(f"{API}/metrics", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["metrics"]["totalEvents"] == 0
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "RateLimit-Limit" not in response.headers

    def test_security_health(self, client, admin_headers):
        assert client.get(f"{API}/health", headers=admin_headers).json()["status"] == "healthy"

        client.post(f"{API}/errors", json={"message": "Kernel panic", "level": "critical"}, headers=admin_headers)
        body = client.get(f"{API}/health", headers=admin_headers).json()

        assert body["status"] == "critical"
        assert body["criticalEvents"] == 1

    def test_event_lifecycle(self, client, admin_headers):
        created = client.post(
            f"{API}/events",
            json={"type": "unauthorized_access", "severity": "medium", "ip": "203.0.113.9", "userId": "42"},
            headers=admin_headers,
        )
        assert created.status_code == 201
        event_id = created.json()["eventId"]

        event = client.get(f"{API}/events/{event_id}", headers=admin_headers).json()
        assert event["type"] == "unauthorized_access"
        assert event["userId"] == "42"

        by_type = client.get(f"{API}/events/type/unauthorized_access", headers=admin_headers).json()
        assert by_type["count"] == 1

        recent = client.get(f"{API}/events", params={"limit": 5}, headers=admin_headers).json()
        assert recent["events"][0]["id"] == event_id

        resolved = client.post(f"{API}/events/{event_id}/resolve", headers=admin_headers)
        assert resolved.status_code == 200
        assert client.get(f"{API}/events/{event_id}", headers=admin_headers).json()["resolved"] is True

    def test_unknown_event(self, client, admin_headers):
        response = client.get(f"{API}/events/does-not-exist", headers=admin_headers)

        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"
        assert client.post(f"{API}/events/does-not-exist/resolve", headers=admin_headers).status_code == 404

    def test_invalid_event_payload(self, client, admin_headers):
        response = client.post(
            f"{API}/events",
            json={"type": "made_up", "severity": "medium", "ip": "203.0.113.9"},
            headers=admin_headers,
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_rate_limit_views(self, client, admin_headers):
        assert client.get("/api/orders").status_code == 404

        tiers = client.get(f"{API}/rate-limits/tiers", headers=admin_headers).json()["config"]
        assert [tier["name"] for tier in tiers][0] == "authentication"
        assert len(tiers) == 5

        statistics = client.get(f"{API}/rate-limits/statistics", headers=admin_headers).json()["statistics"]
        assert statistics["configuredTiers"] == 5
        assert statistics["tiers"]["api_access"]["checked"] >= 1

        activities = client.get(f"{API}/suspicious-activities", headers=admin_headers).json()
        assert activities["count"] >= 1
        assert activities["activities"][0]["ip"] == "testclient"
        assert activities["activities"][0]["endpoint"] == "/api/orders"


@pytest.mark.integration
class TestBlockListEndpoints:

    def test_block_unblock_round_trip(self, client, admin_headers, engine):
        blocked = client.post(
            f"{API}/blocked-ips",
            json={"ip": "1.2.3.4", "reason": "Credential stuffing"},
            headers=admin_headers,
        )
        assert blocked.status_code == 200
        assert blocked.json()["reason"] == "Credential stuffing"

        duplicate = client.post(f"{API}/blocked-ips", json={"ip": "1.2.3.4"}, headers=admin_headers)
        assert duplicate.status_code == 409

        listing = client.get(f"{API}/blocked-ips", headers=admin_headers).json()
        assert listing["blockedIPs"] == ["1.2.3.4"]
        assert listing["entries"][0]["source"] == "admin"

        assert client.delete(f"{API}/blocked-ips/1.2.3.4", headers=admin_headers).status_code == 200
        assert client.delete(f"{API}/blocked-ips/1.2.3.4", headers=admin_headers).status_code == 404
        assert engine.list_blocked_ips() == []

    def test_invalid_ip(self, client, admin_headers):
        response = client.post(f"{API}/blocked-ips", json={"ip": "not-an-ip"}, headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"


@pytest.mark.integration
class TestIngestionEndpoints:

    def test_login_failures_lock_out_ip(self, client, admin_headers):
        responses = [
            client.post(f"{API}/login-results", json={"ip": "203.0.113.5", "success": False}, headers=admin_headers)
            for _ in range(10)
        ]

        assert all(response.status_code == 201 for response in responses)
        assert [response.json()["blocked"] for response in responses] == [False] * 9 + [True]

        suspicious = client.get(f"{API}/events/type/suspicious_activity", headers=admin_headers).json()
        assert suspicious["count"] == 1
        assert suspicious["events"][0]["severity"] == "high"

    def test_high_volume_ingestion_is_not_throttled(self, client, admin_headers, engine):
        statuses = {
            client.post(
                f"{API}/login-results",
                json={"ip": f"198.51.100.{n % 5}", "success": True, "userId": str(n)},
                headers=admin_headers,
            ).status_code
            for n in range(120)
        }

        assert statuses == {201}
        assert engine.list_blocked_ips() == []
        assert engine.list_suspicious_activity() == []
        assert client.get(f"{API}/metrics", headers=admin_headers).status_code == 200

    def test_blocked_admin_ip_can_still_unblock(self, client, admin_headers, engine):
        engine.block_ip("203.0.113.50", "test")
        headers = {**admin_headers, "X-Forwarded-For": "203.0.113.50"}

        assert client.get("/api/orders", headers=headers).status_code == 403
        assert client.get(f"{API}/metrics", headers=headers).status_code == 200
        assert client.delete(f"{API}/blocked-ips/203.0.113.50", headers=headers).status_code == 200
        assert engine.list_blocked_ips() == []

    def test_login_attempt(self, client, admin_headers, engine):
        response = client.post(
            f"{API}/login-attempts",
            json={"ip": "203.0.113.5", "email": "a@example.com", "userAgent": "Mozilla/5.0"},
            headers=admin_headers,
        )

        assert response.status_code == 201
        assert engine.get_metrics()["loginAttempts"] == 1

    def test_error_reports_are_deduplicated(self, client, admin_headers, engine):
        payload = {"message": "Database connection refused", "level": "error", "url": "/api/orders"}

        first = client.post(f"{API}/errors", json=payload, headers=admin_headers).json()["errorId"]
        second = client.post(f"{API}/errors", json=payload, headers=admin_headers).json()["errorId"]

        assert first == second
        assert engine.get_event(first).count == 2

    def test_error_report_rejects_unknown_level(self, client, admin_headers):
        response = client.post(f"{API}/errors", json={"message": "x", "level": "fatal"}, headers=admin_headers)

        assert response.status_code == 422

    def test_session_endpoints(self, client, admin_headers):
        client.post(
            f"{API}/login-results",
            json={"ip": "198.51.100.4", "success": True, "userId": "42", "sessionId": "s1"},
            headers=admin_headers,
        )
        client.post(
            f"{API}/login-results",
            json={"ip": "198.51.100.4", "success": True, "userId": "42", "sessionId": "s2"},
            headers=admin_headers,
        )

        sessions = client.get(f"{API}/users/42/sessions", headers=admin_headers).json()
        assert sessions["activeSessions"] == 2
        assert [session["sessionId"] for session in sessions["sessions"]] == ["s1", "s2"]

        activity = client.post(f"{API}/sessions/activity", json={"sessionId": "s1"}, headers=admin_headers)
        assert activity.json()["tracked"] is True

        assert client.delete(f"{API}/sessions/s1", headers=admin_headers).status_code == 200
        assert client.delete(f"{API}/sessions/s1", headers=admin_headers).status_code == 404

        logout = client.delete(f"{API}/users/42/sessions", headers=admin_headers).json()
        assert logout["removed"] == 1

        multiple = client.get(f"{API}/events/type/multiple_sessions", headers=admin_headers).json()
        assert multiple["count"] == 1


@pytest.mark.integration
class TestUnhandledErrors:

    def test_unhandled_exception_is_reported(self, app: FastAPI, engine):
        @app.get("/api/explode")
        async def explode():
            raise RuntimeError("kaboom")

        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/api/explode")

        assert response.status_code == 500
        assert response.json()["error_code"] == "INTERNAL_SERVER_ERROR"
        errors = engine.get_events_by_type(EventType.APPLICATION_ERROR)
        assert len(errors) == 1
        assert errors[0].message == "kaboom"
        assert errors[0].url == "/api/explode"


@pytest.mark.integration
class TestLiveFeed:

    def test_feed_streams_metrics_and_events(self, client, admin_headers):
        with client.websocket_connect(f"{API}/ws?admin_key={ADMIN_KEY}") as websocket:
            first = websocket.receive_json()
            assert first["type"] == "metrics"

            client.post(
                f"{API}/events",
                json={"type": "login_attempt", "severity": "low", "ip": "203.0.113.1"},
                headers=admin_headers,
            )

            message = websocket.receive_json()
            assert message["type"] == "security_event"
            assert message["data"]["ip"] == "203.0.113.1"

    def test_feed_accepts_header_key(self, client):
        with client.websocket_connect(f"{API}/ws", headers={"X-Admin-Key": ADMIN_KEY}) as websocket:
            assert websocket.receive_json()["type"] == "metrics"

    def test_feed_rejects_missing_key(self, client, engine):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"{API}/ws") as websocket:
                websocket.receive_json()

        assert exc_info.value.code == 1008
        assert len(engine.telemetry) == 0
