# src/pos_fiscal/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import fbr_router, queue_router, system_router

__all__ = [
    "fbr_router",
    "queue_router",
    "system_router",
]
