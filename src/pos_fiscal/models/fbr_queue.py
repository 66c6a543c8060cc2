# src/pos_fiscal/models/fbr_queue.py
"""SQLAlchemy model for the FBR submission queue."""

from datetime import datetime

from sqlalchemy import (
    CHAR,
    VARCHAR,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from pos_fiscal.db.session import Base
from pos_fiscal.db.time import utcnow
from pos_fiscal.db.types import UTCDateTime

# At most one non-terminal entry per sale.
ACTIVE_ENTRY_PREDICATE = text("state NOT IN ('synced', 'dead_letter')")


class QueueEntry(Base):
    """One submission attempt chain for a sale.

    Rows are only mutated through the submission queue service; terminal rows
    (``synced``, ``dead_letter``) are never touched again. A manual re-queue
    starts a new chain with the next ``chain_seq``.
    """

    __tablename__ = "fbr_queue"
    __table_args__ = (
        UniqueConstraint("tenant_id", "sale_id", "chain_seq", name="uq_fbr_queue_chain"),
        Index(
            "uq_fbr_queue_active_sale",
            "tenant_id",
            "sale_id",
            unique=True,
            sqlite_where=ACTIVE_ENTRY_PREDICATE,
            postgresql_where=ACTIVE_ENTRY_PREDICATE,
        ),
        Index("ix_fbr_queue_due", "state", "next_attempt_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, ForeignKey("tenant.id"), nullable=False)
    sale_id: Mapped[int] = mapped_column(Integer, ForeignKey("sale.id"), nullable=False)
    chain_seq: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=1)
    state: Mapped[str] = mapped_column(
        VARCHAR(20), nullable=False, default="pending"
    )  # 'pending', 'in_flight', 'retrying', 'synced', 'dead_letter'
    dead_letter_reason: Mapped[str | None] = mapped_column(
        VARCHAR(20), nullable=True
    )  # 'validation', 'exhausted', 'configuration'
    attempt_count: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=5)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    claim_token: Mapped[str | None] = mapped_column(CHAR(32), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Canonical JSON of the wire payload, frozen for the whole chain.
    payload_snapshot: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload_hash: Mapped[str | None] = mapped_column(CHAR(64), nullable=True)  # SHA-256 hex
    reference_number: Mapped[str] = mapped_column(Text, nullable=False)
    fbr_invoice_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def payload_bytes(self) -> bytes:
        """Return the frozen payload exactly as it is sent on the wire."""
        return (self.payload_snapshot or "").encode("utf-8")
