# src/pos_fiscal/api/v1/endpoints/queue.py
"""Tenant-level queue inspection endpoints."""

from typing import Annotated

from fastapi import APIRouter, Query

from pos_fiscal.schemas.fbr import QueueEntryResponse, QueueStatsResponse
from pos_fiscal.services.submission_queue import SubmissionQueue

from ..dependencies import SessionDep

router = APIRouter(prefix="/tenants/{tenant_id}/fbr", tags=["fbr", "queue"])


@router.get("/queue", response_model=QueueStatsResponse)
async def get_queue_stats(tenant_id: int, db: SessionDep) -> QueueStatsResponse:
    """Count the tenant's queue entries by state.

    Every state is present in ``counts``, zero when no entry is in it.
    """
    queue = SubmissionQueue(db)
    return QueueStatsResponse(
        tenant_id=tenant_id,
        counts=queue.counts_by_state(tenant_id),
        dead_letter_reasons=queue.dead_letter_reasons(tenant_id),
    )


@router.get("/dead-letters", response_model=list[QueueEntryResponse])
async def list_dead_letters(
    tenant_id: int,
    db: SessionDep,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> list[QueueEntryResponse]:
    """List the tenant's dead-lettered entries, newest first."""
    entries = SubmissionQueue(db).dead_letters(tenant_id, limit=limit)
    return [QueueEntryResponse.model_validate(entry) for entry in entries]
