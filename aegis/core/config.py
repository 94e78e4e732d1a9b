"""
Application configuration settings.
"""

import os
from typing import List, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Project settings
    PROJECT_NAME: str = "Aegis Security Engine"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api/v1"

    # Admin surface
    ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "")
    PRIVILEGED_ROLES: List[str] = ["super_admin"]

    # Redis settings
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    RATE_LIMIT_STORAGE: str = os.getenv("RATE_LIMIT_STORAGE", "memory")  # memory | redis

    # CORS settings
    ALLOWED_HOSTS: str = "*"

    @property
    def allowed_hosts_list(self) -> List[str]:
        """Parse ALLOWED_HOSTS from comma-separated string to list."""
        if self.ALLOWED_HOSTS == "*":
            return ["*"]
        return [host.strip() for host in self.ALLOWED_HOSTS.split(",") if host.strip()]

    # Request edge
    TRUST_FORWARDED_HEADERS: bool = True
    LOGIN_PATH: str = "/api/auth/login"
    SECURITY_BYPASS_PATHS: List[str] = ["/health", "/docs", "/redoc", "/openapi.json", "/favicon.ico"]

    # Event store
    EVENT_STORE_CAPACITY: int = 1000
    RESOLVED_EVENT_RETENTION_SECONDS: int = 24 * 60 * 60

    # Login tracking
    LOGIN_LOCKOUT_THRESHOLD: int = 10
    LOGIN_ATTEMPT_WINDOW_SECONDS: int = 15 * 60

    # Sessions
    SESSION_TIMEOUT_SECONDS: int = 4 * 60 * 60
    MAX_CONCURRENT_SESSIONS: int = 3

    # Threat detection
    AUTO_BLOCK_ON_HIGH_SEVERITY: bool = True
    SUSPICIOUS_REQUEST_THRESHOLD: int = 50
    SUSPICIOUS_WINDOW_SECONDS: int = 60
    SUSPICIOUS_RECORD_TTL_SECONDS: int = 24 * 60 * 60

    # Health report
    HEALTH_HIGH_SEVERITY_WARNING: int = 5

    # Periodic tasks
    SESSION_SWEEP_INTERVAL_SECONDS: float = 60.0
    RETENTION_SWEEP_INTERVAL_SECONDS: float = 60.0 * 60
    METRICS_BROADCAST_INTERVAL_SECONDS: float = 5.0

    # Telemetry
    OBSERVER_QUEUE_SIZE: int = 100

    # Alerting
    ALERT_CRITICAL_THRESHOLD: int = 1
    ALERT_HIGH_THRESHOLD: int = 5
    ALERT_HOURLY_LIMIT: int = 50
    ALERT_WEBHOOK_URL: Optional[str] = os.getenv("ALERT_WEBHOOK_URL") or None
    ALERT_WEBHOOK_SECRET: Optional[str] = os.getenv("ALERT_WEBHOOK_SECRET") or None
    ALERT_WEBHOOK_TIMEOUT: float = 10.0

    # Snapshots
    SNAPSHOT_PATH: Optional[str] = os.getenv("SNAPSHOT_PATH") or None
    SNAPSHOT_INTERVAL_SECONDS: float = 60.0

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"

    # Development settings
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "allow"


# Create global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
