"""
Security middleware: per-request block list, burst detection and tiered
rate limiting, plus login and session monitoring.
"""

from typing import Dict, Optional

from fastapi import Request, Response
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from aegis.core.config import Settings, get_settings
from aegis.services.rate_limiting import RequestIdentity, SubscriptionPlan
from aegis.services.security_engine import SecurityEngine


class SecurityMiddleware(BaseHTTPMiddleware):
    """Runs every request past the security engine; fails open on engine errors."""

    def __init__(
        self,
        app,
        engine: Optional[SecurityEngine] = None,
        settings: Optional[Settings] = None,
    ):
        super().__init__(app)
        self._engine = engine
        self.settings = settings or get_settings()
        self._bypass_paths = tuple(self.settings.SECURITY_BYPASS_PATHS)
        # Admin and ingestion routes are guarded by require_admin, not by the edge checks
        self._control_prefix = f"{self.settings.API_V1_STR}/security"

    def _get_engine(self, request: Request) -> Optional[SecurityEngine]:
        if self._engine is not None:
            return self._engine
        return getattr(request.app.state, "security_engine", None)

    async def dispatch(self, request: Request, call_next):
        """Process request through security pipeline."""
        engine = self._get_engine(request)
        if engine is None or self._should_bypass_security(request):
            return await call_next(request)

        if request.url.path.startswith(self._control_prefix):
            response = await call_next(request)
            self._add_headers(response)
            return response

        ip = self._get_client_ip(request)
        user_agent = request.headers.get("User-Agent", "unknown")
        path = request.url.path

        try:
            decision = await engine.check_request(
                ip,
                path,
                identity=self._build_identity(request, ip),
                user_agent=user_agent,
            )
        except Exception as e:
            logger.error(f"Security middleware error, request passed unmonitored: {e}")
            return await call_next(request)

        if not decision.allowed:
            logger.warning(
                f"Security violation: {decision.reason} from {ip} on {request.method} {path}"
            )
            return JSONResponse(
                status_code=decision.status_code,
                content=decision.payload,
                headers=decision.headers,
            )

        is_login = request.method == "POST" and path == self.settings.LOGIN_PATH
        if is_login:
            self._safely(
                "login attempt",
                engine.report_login_attempt,
                ip,
                user_agent=user_agent,
                details={"referer": request.headers.get("Referer")},
            )

        session_id = getattr(request.state, "session_id", None)
        if session_id:
            self._safely(
                "session activity",
                engine.track_session_activity,
                session_id,
                getattr(request.state, "user_id", None),
            )

        response = await call_next(request)

        self._add_headers(response, decision.headers)
        try:
            await engine.release_request(decision, response.status_code)
        except Exception as e:
            logger.error(f"Failed to release rate limit hit: {e}")

        if is_login and response.status_code in (200, 401):
            self._safely(
                "login result",
                engine.report_login_result,
                ip,
                response.status_code == 200,
                user_id=getattr(request.state, "user_id", None),
                email=getattr(request.state, "email", None),
                user_agent=user_agent,
                session_id=getattr(request.state, "session_id", None),
            )

        return response

    def _should_bypass_security(self, request: Request) -> bool:
        """Check if request should bypass security checks."""
        if request.method == "OPTIONS":
            return True
        return any(request.url.path.startswith(path) for path in self._bypass_paths)

    def _get_client_ip(self, request: Request) -> str:
        """Get client IP address."""
        if self.settings.TRUST_FORWARDED_HEADERS:
            forwarded_for = request.headers.get("X-Forwarded-For")
            if forwarded_for:
                return forwarded_for.split(",")[0].strip()

            real_ip = request.headers.get("X-Real-IP")
            if real_ip:
                return real_ip.strip()

        if request.client and request.client.host:
            return request.client.host
        return "unknown"

    @staticmethod
    def _build_identity(request: Request, ip: str) -> RequestIdentity:
        """Identity populated upstream by the authentication layer."""
        state = request.state
        user_id = getattr(state, "user_id", None)
        return RequestIdentity(
            ip=ip,
            user_id=str(user_id) if user_id is not None else None,
            role=getattr(state, "user_role", None),
            plan=SubscriptionPlan.parse(getattr(state, "subscription_plan", None)),
            subscription_active=bool(getattr(state, "subscription_active", False)),
        )

    @staticmethod
    def _add_headers(response: Response, extra: Optional[Dict[str, str]] = None):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        for name, value in (extra or {}).items():
            response.headers[name] = value

    @staticmethod
    def _safely(action: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Security monitoring failed to record {action}: {e}")
            return None
