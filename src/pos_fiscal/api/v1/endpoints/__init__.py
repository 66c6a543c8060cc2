# src/pos_fiscal/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .fbr import router as fbr_router
from .queue import router as queue_router
from .system import router as system_router

__all__ = [
    "fbr_router",
    "queue_router",
    "system_router",
]
