"""
Global exception handlers for the FastAPI application.
"""

import traceback
from typing import Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from aegis.utils.exceptions import AegisException


STATUS_BY_ERROR_CODE = {
    "VALIDATION_ERROR": 400,
    "AUTHENTICATION_ERROR": 401,
    "AUTHORIZATION_ERROR": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "CONFIGURATION_ERROR": 500,
}


async def aegis_exception_handler(request: Request, exc: AegisException) -> JSONResponse:
    """Handle custom security engine exceptions."""
    status_code = STATUS_BY_ERROR_CODE.get(exc.error_code, 500)
    log = logger.bind(error_code=exc.error_code, url=str(request.url), method=request.method)
    if status_code >= 500:
        log.error(f"Aegis Exception: {exc.message}")
    else:
        log.warning(f"Aegis Exception: {exc.message}")

    return JSONResponse(
        status_code=status_code,
        content={
            "message": exc.message,
            "error_code": exc.error_code,
            "details": exc.details,
            "type": "aegis_error",
        }
    )


async def http_exception_handler(
    request: Request, exc: Union[HTTPException, StarletteHTTPException]
) -> JSONResponse:
    """Handle HTTP exceptions."""
    logger.bind(status_code=exc.status_code, url=str(request.url), method=request.method).warning(
        f"HTTP Exception: {exc.detail}"
    )

    headers = getattr(exc, "headers", None)
    detail = exc.detail
    if isinstance(detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "message": detail.get("message", str(exc.detail)),
                "error_code": detail.get("error_code"),
                "details": detail.get("details", {}),
                "type": "http_error",
            },
            headers=headers,
        )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "message": str(exc.detail),
            "error_code": f"HTTP_{exc.status_code}",
            "details": {},
            "type": "http_error",
        },
        headers=headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation exceptions."""
    logger.bind(url=str(request.url), method=request.method).warning(
        f"Validation Error: {exc.errors()}"
    )

    formatted_errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        formatted_errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    return JSONResponse(
        status_code=422,
        content={
            "message": "Validation failed",
            "error_code": "VALIDATION_ERROR",
            "details": {"errors": formatted_errors},
            "type": "validation_error",
        }
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions and report them as application errors."""
    logger.opt(exception=exc).error(
        f"Unhandled Exception: {type(exc).__name__}: {exc} ({request.method} {request.url.path})"
    )

    engine = getattr(request.app.state, "security_engine", None)
    if engine is not None:
        try:
            engine.report_error(
                str(exc) or type(exc).__name__,
                level="error",
                stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                url=request.url.path,
                method=request.method,
                user_id=getattr(request.state, "user_id", None),
                ip=request.client.host if request.client else None,
                user_agent=request.headers.get("User-Agent"),
                context={"exception_type": type(exc).__name__},
            )
        except Exception as report_error:
            logger.error(f"Failed to report unhandled exception: {report_error}")

    return JSONResponse(
        status_code=500,
        content={
            "message": "Internal server error",
            "error_code": "INTERNAL_SERVER_ERROR",
            "details": {
                "exception_type": type(exc).__name__,
                "debug_message": str(exc) if request.app.debug else None,
            },
            "type": "internal_error",
        }
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(AegisException, aegis_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
