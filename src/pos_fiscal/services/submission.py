# src/pos_fiscal/services/submission.py
"""Inbound submission operations used by the HTTP layer.

Every operation receives the tenant explicitly and builds a ``TenantContext``
for that call; nothing tenant-specific is kept on the service or in process
state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from pos_fiscal.core.errors import (
    ConfigurationError,
    InvoiceValidationError,
    ProtocolViolationError,
    TransientSubmissionError,
    Violation,
)
from pos_fiscal.core.queue_state import QueueState, RetryPolicy
from pos_fiscal.db.time import utcnow
from pos_fiscal.models import QueueEntry, Sale, Tenant
from pos_fiscal.services.authority import (
    AuthorityAuthenticationError,
    AuthorityClient,
    AuthorityUnavailableError,
    get_authority_client,
)
from pos_fiscal.services.notifier import AuditLogNotifier, SubmissionNotifier
from pos_fiscal.services.reference_data import (
    ReferenceDataCache,
    ReferenceDataSet,
    get_reference_cache,
)
from pos_fiscal.services.submission_queue import SubmissionQueue
from pos_fiscal.services.transformer import transform, validate
from pos_fiscal.services.vault import CredentialVault, ResolvedCredential, get_credential_vault

logger = logging.getLogger(__name__)


class SaleNotFoundError(LookupError):
    """Raised when a tenant or sale does not exist (or belongs to another tenant)."""


class RequeueNotAllowedError(ProtocolViolationError):
    """Raised when a sale is re-queued while its latest entry is not dead-lettered."""


@dataclass(frozen=True)
class TenantContext:
    """Everything one operation needs to know about a tenant."""

    tenant: Tenant
    reference: ReferenceDataSet
    credential: ResolvedCredential | None = None


@dataclass
class ValidationReport:
    """Local violations plus any errors returned by the authority's validator."""

    sale_id: int
    violations: list[Violation] = field(default_factory=list)
    remote_errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations and not self.remote_errors


class SubmissionService:
    """Validate, enqueue and re-queue sales for FBR submission."""

    def __init__(
        self,
        db: Session,
        reference_cache: ReferenceDataCache | None = None,
        vault: CredentialVault | None = None,
        client: AuthorityClient | None = None,
        notifier: SubmissionNotifier | None = None,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.reference_cache = reference_cache or get_reference_cache()
        self._vault = vault
        self._client = client
        self.notifier: SubmissionNotifier = notifier or AuditLogNotifier()
        self.queue = SubmissionQueue(db, policy=policy, clock=clock)

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = get_credential_vault()
        return self._vault

    @property
    def client(self) -> AuthorityClient:
        if self._client is None:
            self._client = get_authority_client()
        return self._client

    def load_context(self, tenant_id: int, *, with_credential: bool = False) -> TenantContext:
        """Build the per-call tenant context.

        Raises:
            SaleNotFoundError: If the tenant does not exist
            ConfigurationError: If reference data or the credential is unavailable
        """
        tenant = self.db.get(Tenant, tenant_id)
        if tenant is None:
            raise SaleNotFoundError(f"Tenant {tenant_id} not found")
        reference = self.reference_cache.get()
        credential = self.vault.resolve(self.db, tenant_id) if with_credential else None
        return TenantContext(tenant=tenant, reference=reference, credential=credential)

    def get_sale(self, tenant_id: int, sale_id: int) -> Sale:
        sale = self.db.scalars(
            select(Sale)
            .where(Sale.id == sale_id, Sale.tenant_id == tenant_id)
            .options(selectinload(Sale.items))
        ).first()
        if sale is None:
            raise SaleNotFoundError(f"Sale {sale_id} not found")
        return sale

    def latest_entry(self, tenant_id: int, sale_id: int) -> QueueEntry | None:
        return self.queue.latest_entry(tenant_id, sale_id)

    async def validate(
        self, tenant_id: int, sale_id: int, *, remote: bool = False
    ) -> ValidationReport:
        """Run the transformer checks, and optionally FBR's validator, without queueing."""
        context = self.load_context(tenant_id, with_credential=remote)
        sale = self.get_sale(tenant_id, sale_id)
        report = ValidationReport(
            sale_id=sale_id,
            violations=validate(sale, context.tenant, context.reference),
        )
        if not remote or report.violations or context.credential is None:
            return report

        payload = transform(sale, context.tenant, context.reference)
        try:
            report.remote_errors = await self.client.validate_invoice(
                context.credential, payload.canonical_json().encode("utf-8")
            )
        except AuthorityUnavailableError as exc:
            raise TransientSubmissionError(str(exc)) from exc
        except AuthorityAuthenticationError as exc:
            raise ConfigurationError(f"FBR token rejected: {exc}") from exc
        return report

    def enqueue(self, tenant_id: int, sale_id: int) -> QueueEntry:
        """Transform a sale and queue it for submission.

        A sale that fails validation is recorded as a validation dead letter,
        with the same text on the sale, before the error is raised.

        Raises:
            InvoiceValidationError: With every violation found
            ConfigurationError: If the tenant cannot submit at all
            AlreadyQueuedError: If the sale already has an active entry
            AlreadySyncedError: If FBR already accepted the sale
        """
        context = self.load_context(tenant_id, with_credential=True)
        sale = self.get_sale(tenant_id, sale_id)
        try:
            payload = transform(sale, context.tenant, context.reference)
        except InvoiceValidationError as exc:
            entry = self.queue.enqueue_rejected(
                tenant_id, sale_id, sale.reference_number, exc.violations
            )
            self.notifier.entry_finished(self.db, entry)
            raise
        return self.queue.enqueue(tenant_id, sale_id, payload, sale.reference_number)

    def requeue(self, tenant_id: int, sale_id: int) -> QueueEntry:
        """Start a new attempt chain for a dead-lettered sale.

        The payload is rebuilt from the sale as it is now; the dead-lettered
        entry is left untouched.
        """
        latest = self.queue.latest_entry(tenant_id, sale_id)
        if latest is None or latest.state != QueueState.DEAD_LETTER.value:
            state = latest.state if latest else "not queued"
            raise RequeueNotAllowedError(
                f"Sale {sale_id} can only be requeued from dead_letter (currently {state})"
            )
        previous_id = latest.id
        entry = self.enqueue(tenant_id, sale_id)
        previous = self.db.get(QueueEntry, previous_id)
        if previous is not None:
            self.notifier.entry_requeued(self.db, entry, previous)
        return entry
