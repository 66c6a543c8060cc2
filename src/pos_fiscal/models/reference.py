# src/pos_fiscal/models/reference.py
"""SQLAlchemy models for FBR reference data."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import VARCHAR, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pos_fiscal.db.session import Base
from pos_fiscal.db.time import utcnow
from pos_fiscal.db.types import PERCENT, UTCDateTime


class ReferenceCode(Base):
    """A code published by the authority (province, HS code, unit of measure)."""

    __tablename__ = "reference_code"
    __table_args__ = (UniqueConstraint("kind", "code", name="uq_reference_code_kind_code"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(
        VARCHAR(20), nullable=False
    )  # 'province', 'hs_code', 'uom'
    code: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    refreshed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class TaxRate(Base):
    """Tax schedule entry keyed by the product tax category."""

    __tablename__ = "tax_rate"

    category: Mapped[str] = mapped_column(Text, primary_key=True)
    rate: Mapped[Decimal] = mapped_column(PERCENT, nullable=False)
    sale_type: Mapped[str] = mapped_column(Text, nullable=False)
    scenario_id: Mapped[str] = mapped_column(VARCHAR(10), nullable=False)
    # Third schedule goods report the printed retail price instead of a value.
    retail_priced: Mapped[bool] = mapped_column(default=False)
