"""Batch processor for the FBR submission queue.

This module provides the QueueWorker class, invoked by an external scheduler
(cron) once per tick. Each run:

- Recovers entries whose lease expired without a result
- Claims a bounded batch of due entries
- Resolves the tenant credential and reference data fresh for every entry
- Renews the entry's lease, then submits the frozen payload with a per-call timeout
- Records the outcome and notifies on terminal states

An entry whose lease was taken over by another run is skipped, never
submitted a second time. A failing entry never aborts the batch; unexpected
errors are recorded as transient failures and the run returns a summary.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pos_fiscal.core.errors import ConfigurationError, ProtocolViolationError
from pos_fiscal.core.queue_state import (
    TERMINAL_STATES,
    Accepted,
    ConfigurationFailure,
    DeadLetterReason,
    Outcome,
    QueueState,
    Rejected,
    RetryPolicy,
    TransientFailure,
)
from pos_fiscal.core.settings import settings
from pos_fiscal.db.session import SessionLocal
from pos_fiscal.db.time import utcnow
from pos_fiscal.models import QueueEntry, TenantCredential
from pos_fiscal.services.authority import (
    AuthorityAuthenticationError,
    AuthorityClient,
    AuthorityError,
    AuthorityRejectedError,
    AuthorityUnavailableError,
    get_authority_client,
)
from pos_fiscal.services.notifier import AuditLogNotifier, SubmissionNotifier
from pos_fiscal.services.reference_data import ReferenceDataCache, get_reference_cache
from pos_fiscal.services.submission_queue import SubmissionQueue
from pos_fiscal.services.vault import CredentialVault, get_credential_vault

# Configure logger for this module
logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Counts for one worker run."""

    recovered: int = 0
    claimed: int = 0
    synced: int = 0
    retrying: int = 0
    dead_letter: int = 0
    config_errors: int = 0
    errors: int = 0
    released: int = 0
    lease_lost: int = 0

    def record(self, entry: QueueEntry) -> None:
        if entry.state == QueueState.SYNCED.value:
            self.synced += 1
        elif entry.state == QueueState.RETRYING.value:
            self.retrying += 1
        elif entry.dead_letter_reason == DeadLetterReason.CONFIGURATION.value:
            self.config_errors += 1
        elif entry.state == QueueState.DEAD_LETTER.value:
            self.dead_letter += 1

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class QueueWorker:
    """Claims due queue entries and submits them to FBR."""

    def __init__(
        self,
        client: AuthorityClient | None = None,
        vault: CredentialVault | None = None,
        reference_cache: ReferenceDataCache | None = None,
        notifier: SubmissionNotifier | None = None,
        db_session: Session | None = None,
        policy: RetryPolicy | None = None,
        batch_size: int | None = None,
        request_timeout: float | None = None,
        run_deadline: float | None = None,
        lease_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the queue worker.

        Args:
            client: Authority client. If None, uses the global client.
            vault: Credential vault. If None, uses the global vault.
            reference_cache: Reference data cache. If None, uses the global cache.
            notifier: Receives terminal outcomes. Defaults to the audit log.
            db_session: Optional database session. If None, opens one per run.
            policy: Retry policy. Defaults to the configured backoff.
            batch_size: Maximum entries claimed per run.
            request_timeout: Seconds allowed for one submit call.
            run_deadline: Seconds after which unstarted entries are released.
            lease_seconds: Lease granted on claim and renewed before each submit.

        Raises:
            ConfigurationError: If one submit may outlast the lease protecting it.
        """
        self.client = client or get_authority_client()
        self.vault = vault or get_credential_vault()
        self.reference_cache = reference_cache or get_reference_cache()
        self.notifier: SubmissionNotifier = notifier or AuditLogNotifier()
        self.policy = policy or RetryPolicy.from_settings()
        self.batch_size = settings.queue_batch_size if batch_size is None else batch_size
        self.request_timeout = (
            settings.fbr_http_timeout_seconds if request_timeout is None else request_timeout
        )
        self.run_deadline = (
            settings.worker_run_deadline_seconds if run_deadline is None else run_deadline
        )
        self.lease_seconds = settings.queue_lease_seconds if lease_seconds is None else lease_seconds
        if self.request_timeout >= self.lease_seconds:
            raise ConfigurationError(
                f"FBR request timeout ({self.request_timeout:g}s) must be shorter than "
                f"the queue lease ({self.lease_seconds}s)"
            )
        self._db_session = db_session
        self._clock = clock
        self._monotonic = monotonic

    async def run_once(self) -> RunSummary:
        """Process one batch. Infrastructure errors (database down) propagate."""
        if self._db_session is not None:
            return await self._run_with_session(self._db_session)
        with SessionLocal() as db:
            return await self._run_with_session(db)

    async def _run_with_session(self, db: Session) -> RunSummary:
        summary = RunSummary()
        deadline = self._monotonic() + self.run_deadline
        queue = SubmissionQueue(
            db, policy=self.policy, clock=self._clock, lease_seconds=self.lease_seconds
        )

        summary.recovered = queue.recover_expired_leases()
        entries = queue.claim_due(self.batch_size)
        summary.claimed = len(entries)
        # Tokens are read once, while the claim is certainly ours.
        claims = [(entry, entry.claim_token or "") for entry in entries]

        for index, (entry, claim_token) in enumerate(claims):
            if self._monotonic() >= deadline:
                self._release_remaining(queue, claims[index:], summary)
                break
            await self._process_entry(db, queue, entry, claim_token, summary)

        logger.info("FBR queue run finished: %s", summary.as_dict())
        return summary

    def _release_remaining(
        self,
        queue: SubmissionQueue,
        claims: list[tuple[QueueEntry, str]],
        summary: RunSummary,
    ) -> None:
        logger.warning("Run deadline reached; releasing %d unstarted entries", len(claims))
        for entry, claim_token in claims:
            try:
                queue.release(entry.id, claim_token)
                summary.released += 1
            except ProtocolViolationError:
                summary.errors += 1
                logger.error("Could not release queue entry %s", entry.id, exc_info=True)

    async def _process_entry(
        self,
        db: Session,
        queue: SubmissionQueue,
        entry: QueueEntry,
        claim_token: str,
        summary: RunSummary,
    ) -> None:
        entry_id = entry.id
        try:
            if not queue.renew_lease(entry_id, claim_token):
                summary.lease_lost += 1
                logger.warning(
                    "Lease on queue entry %s was taken over before submission; skipping it",
                    entry_id,
                )
                return
            outcome = await self._submit(db, entry)
            finished = queue.mark_result(entry_id, claim_token, outcome)
        except ProtocolViolationError:
            summary.errors += 1
            logger.error("Queue protocol violation on entry %s", entry_id, exc_info=True)
            return
        except SQLAlchemyError:
            db.rollback()
            summary.errors += 1
            logger.error("Database error while recording entry %s", entry_id, exc_info=True)
            return
        except Exception as exc:
            db.rollback()
            summary.errors += 1
            logger.error("Unexpected error processing entry %s", entry_id, exc_info=True)
            rescheduled = self._reschedule(queue, entry_id, claim_token, exc)
            if rescheduled is None:
                return
            finished = rescheduled

        summary.record(finished)
        if finished.state == QueueState.SYNCED.value:
            self._touch_last_sync(db, finished.tenant_id)
        if QueueState(finished.state) in TERMINAL_STATES:
            try:
                self.notifier.entry_finished(db, finished)
            except Exception:
                db.rollback()
                logger.error("Failed to notify about entry %s", entry_id, exc_info=True)

    def _reschedule(
        self, queue: SubmissionQueue, entry_id: int, claim_token: str, exc: Exception
    ) -> QueueEntry | None:
        """Record an unexpected failure as transient so the entry leaves ``in_flight``."""
        try:
            return queue.mark_result(
                entry_id,
                claim_token,
                TransientFailure(f"Unexpected {type(exc).__name__}: {exc}"),
            )
        except (ProtocolViolationError, SQLAlchemyError):
            logger.error("Could not reschedule queue entry %s", entry_id, exc_info=True)
            return None

    async def _submit(self, db: Session, entry: QueueEntry) -> Outcome:
        try:
            credential = self.vault.resolve(db, entry.tenant_id)
            reference = self.reference_cache.get()
        except ConfigurationError as exc:
            logger.warning(
                "Tenant %s cannot submit sale %s: %s", entry.tenant_id, entry.sale_id, exc.message
            )
            return ConfigurationFailure(exc.message)

        logger.debug(
            "Submitting entry %s (attempt %d, reference data %s)",
            entry.id,
            entry.attempt_count + 1,
            reference.version,
        )
        try:
            accepted = await asyncio.wait_for(
                self.client.submit_invoice(
                    credential,
                    entry.payload_bytes,
                    idempotency_key=entry.reference_number,
                ),
                timeout=self.request_timeout,
            )
        except TimeoutError:
            logger.warning("FBR submit timed out for entry %s", entry.id)
            return TransientFailure(f"FBR did not respond within {self.request_timeout:g}s")
        except AuthorityRejectedError as exc:
            return Rejected(tuple(exc.errors))
        except AuthorityAuthenticationError as exc:
            logger.warning("FBR rejected the token of tenant %s: %s", entry.tenant_id, exc)
            return ConfigurationFailure(f"FBR token rejected: {exc}")
        except AuthorityUnavailableError as exc:
            logger.warning("FBR unavailable for entry %s: %s", entry.id, exc)
            return TransientFailure(str(exc))
        except AuthorityError as exc:
            logger.warning("FBR call failed for entry %s: %s", entry.id, exc)
            return TransientFailure(str(exc))
        except (OSError, ConnectionError) as exc:
            logger.warning("Network error for entry %s: %s", entry.id, exc)
            return TransientFailure(f"Network error: {exc}")

        return Accepted(invoice_number=accepted.invoice_number, dated=accepted.dated)

    def _touch_last_sync(self, db: Session, tenant_id: int) -> None:
        try:
            db.execute(
                update(TenantCredential)
                .where(TenantCredential.tenant_id == tenant_id)
                .values(last_sync_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.warning("Could not update last sync time for tenant %s", tenant_id, exc_info=True)
