# src/pos_fiscal/schemas/fbr.py
"""FBR submission API request/response schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class ViolationResponse(BaseModel):
    """A single validation problem found on a sale."""

    field: str
    code: str
    message: str


class ValidationResult(BaseModel):
    """Outcome of a local (and optionally remote) validation run."""

    sale_id: int
    valid: bool
    violations: list[ViolationResponse] = []
    remote_errors: list[str] = []


class QueueEntryResponse(BaseModel):
    """Queue entry as exposed to tenants and operators."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    sale_id: int
    chain_seq: int
    state: str
    dead_letter_reason: str | None
    attempt_count: int
    max_attempts: int
    next_attempt_at: datetime | None
    last_error: str | None
    reference_number: str
    payload_hash: str | None
    fbr_invoice_number: str | None
    created_at: datetime
    updated_at: datetime


class FbrStatusResponse(BaseModel):
    """FBR reporting status of a sale and its latest queue entry."""

    sale_id: int
    fbr_status: str
    fbr_invoice_number: str | None
    fbr_error: str | None
    latest_entry: QueueEntryResponse | None = None


class QueueStatsResponse(BaseModel):
    """Per-state counts for one tenant's queue."""

    tenant_id: int
    counts: dict[str, int]
    dead_letter_reasons: dict[str, int]


class ErrorResponse(BaseModel):
    """Error body shared by all submission endpoints."""

    category: str
    message: str
    errors: list[str] = []
