# src/pos_fiscal/api/v1/endpoints/fbr.py
"""Per-sale FBR endpoints: validate, submit, requeue and status."""

from fastapi import APIRouter, HTTPException, status

from pos_fiscal.schemas.fbr import (
    FbrStatusResponse,
    QueueEntryResponse,
    ValidationResult,
    ViolationResponse,
)
from pos_fiscal.services.submission import SaleNotFoundError

from ..dependencies import SubmissionServiceDep

router = APIRouter(prefix="/tenants/{tenant_id}/sales/{sale_id}/fbr", tags=["fbr"])


def _not_found(exc: SaleNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.post("/validate", response_model=ValidationResult)
async def validate_sale(
    tenant_id: int,
    sale_id: int,
    service: SubmissionServiceDep,
    remote: bool = False,
) -> ValidationResult:
    """Check a sale against the FBR rules without queueing it.

    With ``remote=true`` and no local violations, FBR's own validator is
    called with the tenant's credential as well.
    """
    try:
        report = await service.validate(tenant_id, sale_id, remote=remote)
    except SaleNotFoundError as exc:
        raise _not_found(exc) from exc

    return ValidationResult(
        sale_id=report.sale_id,
        valid=report.valid,
        violations=[ViolationResponse(**violation.to_dict()) for violation in report.violations],
        remote_errors=report.remote_errors,
    )


@router.post(
    "/submit",
    response_model=QueueEntryResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_sale(
    tenant_id: int, sale_id: int, service: SubmissionServiceDep
) -> QueueEntryResponse:
    """Queue a sale for submission; the worker delivers it on its next run."""
    try:
        entry = service.enqueue(tenant_id, sale_id)
    except SaleNotFoundError as exc:
        raise _not_found(exc) from exc
    return QueueEntryResponse.model_validate(entry)


@router.post(
    "/requeue",
    response_model=QueueEntryResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def requeue_sale(
    tenant_id: int, sale_id: int, service: SubmissionServiceDep
) -> QueueEntryResponse:
    """Start a new submission chain for a dead-lettered sale."""
    try:
        entry = service.requeue(tenant_id, sale_id)
    except SaleNotFoundError as exc:
        raise _not_found(exc) from exc
    return QueueEntryResponse.model_validate(entry)


@router.get("/status", response_model=FbrStatusResponse)
async def get_sale_status(
    tenant_id: int, sale_id: int, service: SubmissionServiceDep
) -> FbrStatusResponse:
    """Return the sale's FBR status and its most recent queue entry."""
    try:
        sale = service.get_sale(tenant_id, sale_id)
    except SaleNotFoundError as exc:
        raise _not_found(exc) from exc

    latest = service.latest_entry(tenant_id, sale_id)
    return FbrStatusResponse(
        sale_id=sale.id,
        fbr_status=sale.fbr_status,
        fbr_invoice_number=sale.fbr_invoice_number,
        fbr_error=sale.fbr_error,
        latest_entry=QueueEntryResponse.model_validate(latest) if latest else None,
    )
