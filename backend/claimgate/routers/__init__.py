"""Claimgate - API Routers"""
from .claims import router as claims_router
from .admin import router as admin_router
from .health import router as health_router

__all__ = [
    "claims_router",
    "admin_router",
    "health_router",
]
