"""Warranty Lifecycle Engine - API Routers"""
from .auth import router as auth_router
from .lifecycle import router as lifecycle_router
from .reinstatement import router as reinstatement_router
from .scheduler import router as scheduler_router

__all__ = [
    "auth_router",
    "lifecycle_router",
    "reinstatement_router",
    "scheduler_router",
]
