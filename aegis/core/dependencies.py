"""
FastAPI dependency functions.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, Request

from aegis.core.config import Settings, get_settings
from aegis.services.security_engine import SecurityEngine
from aegis.utils.exceptions import AuthenticationError, AuthorizationError, ConfigurationError


def get_security_engine(request: Request) -> SecurityEngine:
    """Security engine attached to the application by ``create_app``."""
    engine = getattr(request.app.state, "security_engine", None)
    if engine is None:
        raise ConfigurationError("Security engine is not configured")
    return engine


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


async def require_admin(
    request: Request,
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    settings: Settings = Depends(get_app_settings),
) -> str:
    """
    Allow the admin API key or a privileged role set upstream on ``request.state``.

    Returns a label identifying the admin for audit logging.
    """
    role = getattr(request.state, "user_role", None)
    if role is not None and role in settings.PRIVILEGED_ROLES:
        return f"user:{getattr(request.state, 'user_id', 'unknown')}"

    if x_admin_key is None:
        raise AuthenticationError("Admin credentials required")
    if not settings.ADMIN_API_KEY or not hmac.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        raise AuthorizationError()
    return "admin-key"
