# src/pos_fiscal/services/notifier.py
"""Audit/notification hooks for terminal submission outcomes."""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.orm import Session

from pos_fiscal.core.queue_state import QueueState
from pos_fiscal.models import AuditEvent, QueueEntry

logger = logging.getLogger(__name__)


class SubmissionNotifier(Protocol):
    """Receives entries that reached a terminal state, and operator actions."""

    def entry_finished(self, db: Session, entry: QueueEntry) -> None: ...

    def entry_requeued(self, db: Session, entry: QueueEntry, previous: QueueEntry) -> None: ...


class AuditLogNotifier:
    """Write terminal outcomes to ``fbr_audit_log`` and the application log."""

    def entry_finished(self, db: Session, entry: QueueEntry) -> None:
        if entry.state == QueueState.SYNCED.value:
            detail = f"FBR invoice {entry.fbr_invoice_number}"
            logger.info(
                "Sale %s synced with FBR invoice %s after %d attempt(s)",
                entry.sale_id,
                entry.fbr_invoice_number,
                entry.attempt_count,
            )
        else:
            detail = entry.last_error
            logger.warning(
                "Sale %s dead-lettered (%s): %s",
                entry.sale_id,
                entry.dead_letter_reason,
                entry.last_error,
            )

        db.add(
            AuditEvent(
                tenant_id=entry.tenant_id,
                sale_id=entry.sale_id,
                queue_entry_id=entry.id,
                event=entry.state,
                outcome=entry.dead_letter_reason or entry.state,
                detail=detail,
            )
        )
        db.commit()

    def entry_requeued(self, db: Session, entry: QueueEntry, previous: QueueEntry) -> None:
        logger.info(
            "Sale %s requeued as chain %s (previous entry %s, %s)",
            entry.sale_id,
            entry.chain_seq,
            previous.id,
            previous.dead_letter_reason,
        )
        db.add(
            AuditEvent(
                tenant_id=entry.tenant_id,
                sale_id=entry.sale_id,
                queue_entry_id=entry.id,
                event="requeued",
                outcome=previous.dead_letter_reason,
                detail=f"Replaces entry {previous.id}",
            )
        )
        db.commit()
