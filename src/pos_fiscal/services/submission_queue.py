# src/pos_fiscal/services/submission_queue.py
"""Durable FBR submission queue.

All queue mutation goes through this service. Claims and results are
single-statement compare-and-swap updates checked by ``rowcount``, which is
the only concurrency control the engine needs: two workers racing for the
same entry both issue the same conditional UPDATE and exactly one of them
matches a row.

Every state change is mirrored onto the sale (``fbr_status``, ``fbr_error``,
``fbr_invoice_number``) in the same transaction.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import ColumnElement, and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pos_fiscal.core.errors import (
    AlreadyQueuedError,
    AlreadySyncedError,
    ProtocolViolationError,
    Violation,
    format_violations,
)
from pos_fiscal.core.queue_state import (
    ACTIVE_STATES,
    CLAIMABLE_STATES,
    SALE_STATUS_FOR_STATE,
    Accepted,
    DeadLetterReason,
    Outcome,
    QueueState,
    RetryPolicy,
    check_transition,
    resolve_transition,
)
from pos_fiscal.core.settings import settings
from pos_fiscal.db.time import utcnow
from pos_fiscal.models import QueueEntry, Sale
from pos_fiscal.schemas.wire import WirePayload

logger = logging.getLogger(__name__)

LEASE_EXPIRED_MESSAGE = "Lease expired before a result was recorded"


def _values(states: Sequence[QueueState] | frozenset[QueueState]) -> list[str]:
    return sorted(state.value for state in states)


class SubmissionQueue:
    """Enqueue, claim and resolve FBR submission attempts."""

    def __init__(
        self,
        db: Session,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        lease_seconds: int | None = None,
    ) -> None:
        self.db = db
        self.policy = policy or RetryPolicy.from_settings()
        self._clock = clock
        self.lease_seconds = lease_seconds or settings.queue_lease_seconds

    # Lookups

    def active_entry(self, tenant_id: int, sale_id: int) -> QueueEntry | None:
        """Return the non-terminal entry for a sale, if any."""
        return self.db.scalars(
            select(QueueEntry).where(
                QueueEntry.tenant_id == tenant_id,
                QueueEntry.sale_id == sale_id,
                QueueEntry.state.in_(_values(ACTIVE_STATES)),
            )
        ).first()

    def latest_entry(self, tenant_id: int, sale_id: int) -> QueueEntry | None:
        """Return the entry of the most recent attempt chain for a sale."""
        return self.db.scalars(
            select(QueueEntry)
            .where(QueueEntry.tenant_id == tenant_id, QueueEntry.sale_id == sale_id)
            .order_by(QueueEntry.chain_seq.desc())
            .limit(1)
        ).first()

    def counts_by_state(self, tenant_id: int) -> dict[str, int]:
        rows = self.db.execute(
            select(QueueEntry.state, func.count())
            .where(QueueEntry.tenant_id == tenant_id)
            .group_by(QueueEntry.state)
        ).all()
        counts = {state.value: 0 for state in QueueState}
        counts.update({state: int(count) for state, count in rows})
        return counts

    def dead_letter_reasons(self, tenant_id: int) -> dict[str, int]:
        rows = self.db.execute(
            select(QueueEntry.dead_letter_reason, func.count())
            .where(
                QueueEntry.tenant_id == tenant_id,
                QueueEntry.state == QueueState.DEAD_LETTER.value,
            )
            .group_by(QueueEntry.dead_letter_reason)
        ).all()
        return {str(reason): int(count) for reason, count in rows}

    def dead_letters(self, tenant_id: int, limit: int = 50) -> list[QueueEntry]:
        return list(
            self.db.scalars(
                select(QueueEntry)
                .where(
                    QueueEntry.tenant_id == tenant_id,
                    QueueEntry.state == QueueState.DEAD_LETTER.value,
                )
                .order_by(QueueEntry.updated_at.desc(), QueueEntry.id.desc())
                .limit(limit)
            )
        )

    def _next_chain_seq(self, tenant_id: int, sale_id: int) -> int:
        current = self.db.scalar(
            select(func.max(QueueEntry.chain_seq)).where(
                QueueEntry.tenant_id == tenant_id, QueueEntry.sale_id == sale_id
            )
        )
        return int(current or 0) + 1

    # Sale mirror

    def _mirror_sale(
        self,
        tenant_id: int,
        sale_ids: Sequence[int],
        state: QueueState,
        *,
        error: str | None = None,
        invoice_number: str | None = None,
        now: datetime | None = None,
    ) -> None:
        values: dict[str, Any] = {"fbr_status": SALE_STATUS_FOR_STATE[state].value}
        if state is not QueueState.IN_FLIGHT:
            values["fbr_error"] = error
        if state is QueueState.SYNCED:
            values["fbr_invoice_number"] = invoice_number
            values["fbr_synced_at"] = now or self._clock()
        elif state in (QueueState.PENDING, QueueState.DEAD_LETTER) and invoice_number is None:
            values["fbr_invoice_number"] = None
        self.db.execute(
            update(Sale)
            .where(Sale.tenant_id == tenant_id, Sale.id.in_(list(sale_ids)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    # Enqueue

    def _insert(self, entry: QueueEntry) -> QueueEntry:
        existing = self.active_entry(entry.tenant_id, entry.sale_id)
        if existing is not None:
            logger.error(
                "Rejected enqueue of sale %s: active queue entry %s already exists",
                entry.sale_id,
                existing.id,
            )
            raise AlreadyQueuedError(entry.sale_id, existing.id)

        latest = self.latest_entry(entry.tenant_id, entry.sale_id)
        if latest is not None and latest.state == QueueState.SYNCED.value:
            logger.error(
                "Rejected enqueue of sale %s: already synced as FBR invoice %s",
                entry.sale_id,
                latest.fbr_invoice_number,
            )
            raise AlreadySyncedError(entry.sale_id, latest.fbr_invoice_number)

        entry.chain_seq = self._next_chain_seq(entry.tenant_id, entry.sale_id)
        self.db.add(entry)
        try:
            self.db.flush()
        except IntegrityError as exc:
            # Lost a race with a concurrent enqueue; the partial unique index decided.
            self.db.rollback()
            logger.error("Concurrent enqueue of sale %s rejected by unique index", entry.sale_id)
            raise AlreadyQueuedError(entry.sale_id) from exc
        return entry

    def enqueue(
        self,
        tenant_id: int,
        sale_id: int,
        payload: WirePayload,
        reference_number: str,
    ) -> QueueEntry:
        """Create a ``pending`` entry with the payload frozen for the whole chain.

        Raises:
            AlreadyQueuedError: If the sale already has an active entry
            AlreadySyncedError: If the latest chain of the sale was accepted by FBR
        """
        now = self._clock()
        entry = QueueEntry(
            tenant_id=tenant_id,
            sale_id=sale_id,
            state=QueueState.PENDING.value,
            attempt_count=0,
            max_attempts=self.policy.max_attempts,
            next_attempt_at=now,
            payload_snapshot=payload.canonical_json(),
            payload_hash=payload.payload_hash(),
            reference_number=reference_number,
            created_at=now,
            updated_at=now,
        )
        self._insert(entry)
        self._mirror_sale(tenant_id, [sale_id], QueueState.PENDING)
        self.db.commit()
        logger.info(
            "Queued sale %s for tenant %s (entry %s, chain %s)",
            sale_id,
            tenant_id,
            entry.id,
            entry.chain_seq,
        )
        return entry

    def enqueue_rejected(
        self,
        tenant_id: int,
        sale_id: int,
        reference_number: str,
        violations: Sequence[Violation],
    ) -> QueueEntry:
        """Record a sale that failed validation on the enqueue path as a dead letter."""
        now = self._clock()
        message = format_violations(violations)
        entry = QueueEntry(
            tenant_id=tenant_id,
            sale_id=sale_id,
            state=QueueState.DEAD_LETTER.value,
            dead_letter_reason=DeadLetterReason.VALIDATION.value,
            attempt_count=0,
            max_attempts=self.policy.max_attempts,
            next_attempt_at=None,
            last_error=message,
            reference_number=reference_number,
            created_at=now,
            updated_at=now,
        )
        self._insert(entry)
        self._mirror_sale(tenant_id, [sale_id], QueueState.DEAD_LETTER, error=message)
        self.db.commit()
        logger.warning("Sale %s failed validation and was dead-lettered: %s", sale_id, message)
        return entry

    # Claiming

    def recover_expired_leases(self) -> int:
        """Return ``in_flight`` entries whose lease ran out to ``pending``.

        Returns:
            Number of entries recovered
        """
        now = self._clock()
        expired = self.db.execute(
            select(QueueEntry.id, QueueEntry.tenant_id, QueueEntry.sale_id).where(
                QueueEntry.state == QueueState.IN_FLIGHT.value,
                QueueEntry.lease_expires_at <= now,
            )
        ).all()

        recovered = 0
        for entry_id, tenant_id, sale_id in expired:
            check_transition(QueueState.IN_FLIGHT, QueueState.PENDING)
            result = self.db.execute(
                update(QueueEntry)
                .where(
                    QueueEntry.id == entry_id,
                    QueueEntry.state == QueueState.IN_FLIGHT.value,
                    QueueEntry.lease_expires_at <= now,
                )
                .values(
                    state=QueueState.PENDING.value,
                    claim_token=None,
                    lease_expires_at=None,
                    next_attempt_at=now,
                    last_error=LEASE_EXPIRED_MESSAGE,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                recovered += 1
                self._mirror_sale(
                    tenant_id, [sale_id], QueueState.PENDING, error=LEASE_EXPIRED_MESSAGE
                )
                logger.warning("Recovered queue entry %s after lease expiry", entry_id)

        self.db.commit()
        return recovered

    @staticmethod
    def _due(now: datetime) -> ColumnElement[bool]:
        """Entries a claim may take: due ones, or in-flight ones whose lease ran out."""
        return or_(
            and_(
                QueueEntry.state.in_(_values(CLAIMABLE_STATES)),
                QueueEntry.next_attempt_at <= now,
            ),
            and_(
                QueueEntry.state == QueueState.IN_FLIGHT.value,
                QueueEntry.lease_expires_at <= now,
            ),
        )

    def _try_claim(self, entry_id: int, token: str, now: datetime, lease_until: datetime) -> bool:
        result = self.db.execute(
            update(QueueEntry)
            .where(QueueEntry.id == entry_id, self._due(now))
            .values(
                state=QueueState.IN_FLIGHT.value,
                claim_token=token,
                lease_expires_at=lease_until,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claim_due(self, limit: int, lease_seconds: int | None = None) -> list[QueueEntry]:
        """Atomically claim up to ``limit`` due entries for this caller.

        Each candidate is claimed with its own conditional UPDATE carrying a
        fresh claim token, so an entry taken by a concurrent caller between
        the SELECT and the UPDATE is simply skipped. An ``in_flight`` entry
        whose lease has expired is claimable too; its old token stops
        matching, and no attempt is consumed.

        Returns:
            Claimed entries, now ``in_flight`` and holding this call's token
        """
        if limit <= 0:
            return []

        now = self._clock()
        lease_until = now + timedelta(seconds=lease_seconds or self.lease_seconds)
        token = uuid.uuid4().hex

        candidates = self.db.execute(
            select(QueueEntry.id, QueueEntry.state)
            .where(self._due(now))
            .order_by(QueueEntry.next_attempt_at, QueueEntry.id)
            .limit(limit)
        ).all()

        claimed_ids = []
        for entry_id, state in candidates:
            if not self._try_claim(entry_id, token, now, lease_until):
                continue
            if state == QueueState.IN_FLIGHT.value:
                logger.warning("Reclaimed queue entry %s after lease expiry", entry_id)
            claimed_ids.append(entry_id)
        if not claimed_ids:
            self.db.commit()
            return []

        entries = list(
            self.db.scalars(
                select(QueueEntry)
                .where(QueueEntry.id.in_(claimed_ids), QueueEntry.claim_token == token)
                .order_by(QueueEntry.next_attempt_at, QueueEntry.id)
                .execution_options(populate_existing=True)
            )
        )
        by_tenant: dict[int, list[int]] = {}
        for entry in entries:
            by_tenant.setdefault(entry.tenant_id, []).append(entry.sale_id)
        for tenant_id, sale_ids in by_tenant.items():
            self._mirror_sale(tenant_id, sale_ids, QueueState.IN_FLIGHT)
        self.db.commit()

        if len(claimed_ids) < len(candidates):
            logger.info(
                "Claimed %d of %d due entries; the rest were taken by another worker",
                len(claimed_ids),
                len(candidates),
            )
        return entries

    def renew_lease(self, entry_id: int, claim_token: str) -> bool:
        """Extend the lease of a claimed entry to a full lease from now.

        Returns:
            False if the entry is no longer in flight under ``claim_token``
        """
        now = self._clock()
        result = self.db.execute(
            update(QueueEntry)
            .where(
                QueueEntry.id == entry_id,
                QueueEntry.state == QueueState.IN_FLIGHT.value,
                QueueEntry.claim_token == claim_token,
            )
            .values(
                lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    # Results

    def _load_claimed(self, entry_id: int, claim_token: str) -> QueueEntry:
        entry = self.db.get(QueueEntry, entry_id, populate_existing=True)
        if entry is None:
            logger.error("Result recorded for unknown queue entry %s", entry_id)
            raise ProtocolViolationError(f"Queue entry {entry_id} does not exist")
        if entry.state != QueueState.IN_FLIGHT.value or entry.claim_token != claim_token:
            logger.error(
                "Protocol violation on queue entry %s: state=%s, claim token %s",
                entry_id,
                entry.state,
                "matches" if entry.claim_token == claim_token else "does not match",
            )
            raise ProtocolViolationError(
                f"Queue entry {entry_id} is not in flight under this claim"
            )
        return entry

    def _compare_and_set(
        self, entry_id: int, claim_token: str, values: dict[str, Any]
    ) -> None:
        result = self.db.execute(
            update(QueueEntry)
            .where(
                and_(
                    QueueEntry.id == entry_id,
                    QueueEntry.state == QueueState.IN_FLIGHT.value,
                    QueueEntry.claim_token == claim_token,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            logger.error("Queue entry %s changed underneath its claim", entry_id)
            raise ProtocolViolationError(f"Queue entry {entry_id} changed underneath its claim")

    def mark_result(self, entry_id: int, claim_token: str, outcome: Outcome) -> QueueEntry:
        """Apply a submission outcome to an ``in_flight`` entry.

        Raises:
            ProtocolViolationError: If the entry is not in flight under ``claim_token``
        """
        entry = self._load_claimed(entry_id, claim_token)
        now = self._clock()
        transition = resolve_transition(
            entry.state,
            entry.attempt_count,
            entry.max_attempts,
            outcome,
            now,
            self.policy,
        )

        values: dict[str, Any] = {
            "state": transition.state.value,
            "attempt_count": transition.attempt_count,
            "next_attempt_at": transition.next_attempt_at,
            "dead_letter_reason": (
                transition.dead_letter_reason.value if transition.dead_letter_reason else None
            ),
            "last_error": transition.last_error,
            "claim_token": None,
            "lease_expires_at": None,
            "updated_at": now,
        }
        invoice_number = outcome.invoice_number if isinstance(outcome, Accepted) else None
        if invoice_number:
            values["fbr_invoice_number"] = invoice_number

        self._compare_and_set(entry_id, claim_token, values)
        self._mirror_sale(
            entry.tenant_id,
            [entry.sale_id],
            transition.state,
            error=transition.last_error,
            invoice_number=invoice_number,
            now=now,
        )
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def release(self, entry_id: int, claim_token: str) -> QueueEntry:
        """Hand back a claimed entry that was never attempted.

        The entry returns to ``pending`` without consuming an attempt; used when
        the run deadline is reached before the entry was started.
        """
        entry = self._load_claimed(entry_id, claim_token)
        check_transition(entry.state, QueueState.PENDING)
        now = self._clock()
        self._compare_and_set(
            entry_id,
            claim_token,
            {
                "state": QueueState.PENDING.value,
                "claim_token": None,
                "lease_expires_at": None,
                "next_attempt_at": now,
                "updated_at": now,
            },
        )
        self._mirror_sale(
            entry.tenant_id, [entry.sale_id], QueueState.PENDING, error=entry.last_error
        )
        self.db.commit()
        self.db.refresh(entry)
        return entry
