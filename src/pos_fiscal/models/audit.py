# src/pos_fiscal/models/audit.py
"""SQLAlchemy model for the FBR audit trail."""

from datetime import datetime

from sqlalchemy import VARCHAR, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from pos_fiscal.db.session import Base
from pos_fiscal.db.time import utcnow
from pos_fiscal.db.types import UTCDateTime


class AuditEvent(Base):
    """Record of a terminal submission outcome or operator action."""

    __tablename__ = "fbr_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    sale_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    queue_entry_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    event: Mapped[str] = mapped_column(
        VARCHAR(30), nullable=False
    )  # 'synced', 'dead_letter', 'requeued'
    outcome: Mapped[str | None] = mapped_column(VARCHAR(20), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
