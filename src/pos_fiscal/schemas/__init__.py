# src/pos_fiscal/schemas/__init__.py
"""
Pydantic schemas for API request/response models and the FBR wire format.
"""

from .fbr import (
    ErrorResponse,
    FbrStatusResponse,
    QueueEntryResponse,
    QueueStatsResponse,
    ValidationResult,
    ViolationResponse,
)
from .wire import WireItem, WirePayload

__all__ = [
    "ErrorResponse",
    "FbrStatusResponse",
    "QueueEntryResponse",
    "QueueStatsResponse",
    "ValidationResult",
    "ViolationResponse",
    "WireItem", "WirePayload",
]
