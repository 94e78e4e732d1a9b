"""
Main API router for version 1.
"""

from fastapi import APIRouter

from aegis.api.v1.endpoints import security

api_router = APIRouter()

api_router.include_router(security.router, prefix="/security", tags=["security"])
api_router.include_router(security.websocket_router, prefix="/security", tags=["security"])
