"""
Security API request schemas.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from aegis.services.security_events import EventType, SecurityLevel


class SecurityEventCreate(BaseModel):
    """Caller-reported security event."""
    type: EventType = Field(..., description="Event type")
    severity: SecurityLevel = Field(..., description="Event severity")
    ip: str = Field(..., min_length=1, max_length=64, description="Source IP address")
    details: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = Field(None, alias="userId")
    email: Optional[str] = None
    user_agent: Optional[str] = Field(None, alias="userAgent")
    location: Optional[str] = None

    model_config = {"populate_by_name": True}


class ErrorReport(BaseModel):
    """Application error report."""
    message: str = Field(..., min_length=1, max_length=2000)
    level: str = Field("error", description="critical, error, warn or info")
    stack: Optional[str] = None
    url: Optional[str] = None
    method: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")
    ip: Optional[str] = None
    user_agent: Optional[str] = Field(None, alias="userAgent")
    context: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}

    @field_validator("level")
    def validate_level(cls, v):
        """Validate error level."""
        level = v.lower()
        if level not in ("critical", "error", "warn", "warning", "info"):
            raise ValueError("level must be one of critical, error, warn, info")
        return level


class LoginAttemptReport(BaseModel):
    ip: str = Field(..., min_length=1, max_length=64)
    email: Optional[str] = None
    user_agent: Optional[str] = Field(None, alias="userAgent")

    model_config = {"populate_by_name": True}


class LoginResultReport(BaseModel):
    ip: str = Field(..., min_length=1, max_length=64)
    success: bool
    user_id: Optional[str] = Field(None, alias="userId")
    email: Optional[str] = None
    user_agent: Optional[str] = Field(None, alias="userAgent")
    session_id: Optional[str] = Field(None, alias="sessionId")

    model_config = {"populate_by_name": True}


class SessionActivityReport(BaseModel):
    session_id: str = Field(..., min_length=1, alias="sessionId")
    user_id: Optional[str] = Field(None, alias="userId")

    model_config = {"populate_by_name": True}


class IPBlockRequest(BaseModel):
    """IP block request model."""
    ip: str = Field(..., min_length=1, max_length=64, description="IP address to block")
    reason: str = Field("Manually blocked by admin", max_length=500, description="Block reason")
