"""
Aegis Security Engine - FastAPI application entry point.
"""

import sys
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from aegis.api.v1.router import api_router
from aegis.core.config import Settings, get_settings
from aegis.middleware.security_middleware import SecurityMiddleware
from aegis.services.security_engine import SecurityEngine
from aegis.utils.error_handlers import register_exception_handlers


def configure_logging(settings: Optional[Settings] = None):
    """Install the stderr sink at the configured level."""
    settings = settings or get_settings()
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.LOG_LEVEL.upper(),
        format=settings.LOG_FORMAT,
        backtrace=settings.DEBUG,
        diagnose=settings.DEBUG,
    )


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[SecurityEngine] = None,
) -> FastAPI:
    """Build the application around an explicitly constructed security engine."""
    settings = settings or get_settings()
    engine = engine or SecurityEngine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info(f"Starting {settings.PROJECT_NAME}...")
        await engine.start()
        try:
            yield
        finally:
            await engine.stop()
            logger.info(f"Shut down {settings.PROJECT_NAME}")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="Security event monitoring and adaptive rate limiting API",
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
        debug=settings.DEBUG,
    )
    app.state.settings = settings
    app.state.security_engine = engine

    register_exception_handlers(app)

    # Security runs inside CORS so preflight responses are never rate limited
    app.add_middleware(SecurityMiddleware, engine=engine, settings=settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_hosts_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD", "PATCH"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.API_V1_STR)

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {"status": "healthy", "service": "aegis-security-engine"}

    @app.middleware("http")
    async def add_request_id_header(request: Request, call_next):
        """Add request ID header for tracing."""
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(
        "aegis.main:app",
        host="0.0.0.0",
        port=8000,
        reload=get_settings().DEBUG,
    )
