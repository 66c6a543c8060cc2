"""System and transparency endpoints for the FBR submission engine."""

from __future__ import annotations

import time

from fastapi import APIRouter
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError

from pos_fiscal.core.queue_state import QueueState
from pos_fiscal.core.settings import settings
from pos_fiscal.models import QueueEntry

from ..dependencies import AuthorityClientDep, ReferenceCacheDep, SessionDep

router = APIRouter(prefix="/system", tags=["system", "transparency"])


@router.get("/config")
async def get_public_config(reference_cache: ReferenceCacheDep) -> dict[str, object]:
    """Return a sanitized snapshot of public runtime configuration.

    Excludes the master key, tokens and connection strings.

    Returns:
        Dictionary containing app settings, queue knobs and FBR endpoints
    """
    return {
        "app": {
            "name": settings.app_name,
            "version": settings.app_version,
            "debug": settings.debug,
        },
        "queue": settings.queue_knobs,
        "worker": {
            "run_deadline_seconds": settings.worker_run_deadline_seconds,
            "http_timeout_seconds": settings.fbr_http_timeout_seconds,
        },
        "fbr": {
            "default_base_url": settings.fbr_default_base_url,
            "reference_base_url": settings.fbr_reference_base_url,
            "master_key_configured": settings.fbr_master_key is not None,
        },
        "reference_data": {
            "version": reference_cache.version,
            "refresh_interval_seconds": settings.reference_refresh_interval_seconds,
        },
    }


@router.get("/metrics")
async def get_system_metrics(db: SessionDep, client: AuthorityClientDep) -> dict[str, object]:
    """Get queue and FBR API metrics for monitoring.

    Args:
        db: Database session
        client: FBR client whose request metrics are reported

    Returns:
        Dictionary with database health, queue counts across all tenants,
        and FBR request statistics
    """
    queue: dict[str, int] = {state.value: 0 for state in QueueState}
    try:
        rows = db.execute(
            select(QueueEntry.state, func.count()).group_by(QueueEntry.state)
        ).all()
        queue.update({state: int(count) for state, count in rows})
        db_healthy = True
    except SQLAlchemyError:
        db.rollback()
        db_healthy = False

    return {
        "timestamp": int(time.time()),
        "database": {
            "healthy": db_healthy,
            "status": "connected" if db_healthy else "disconnected",
        },
        "queue": queue,
        "fbr": client.get_metrics(),
    }


@router.get("/health")
async def get_system_health(db: SessionDep) -> dict[str, object]:
    """Health check covering the database connection.

    Args:
        db: Database session

    Returns:
        Dictionary with overall status, component health, and version info
    """
    try:
        db.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError as exc:
        db_status = f"unhealthy: {exc}"

    return {
        "status": "healthy" if db_status == "healthy" else "unhealthy",
        "timestamp": int(time.time()),
        "components": {"database": db_status},
        "version": settings.app_version,
    }
