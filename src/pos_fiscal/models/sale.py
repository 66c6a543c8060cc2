# src/pos_fiscal/models/sale.py
"""SQLAlchemy models for the sales ledger consumed by the submission engine."""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, ForeignKey, Integer, Text, UniqueConstraint, VARCHAR
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pos_fiscal.db.session import Base
from pos_fiscal.db.time import utcnow
from pos_fiscal.db.types import MONEY, PERCENT, QUANTITY, UTCDateTime


class Sale(Base):
    """A recorded sale and its FBR reporting status.

    Business facts are written by the sales workflow; the ``fbr_*`` columns are
    owned by the submission engine once the sale has been queued.
    """

    __tablename__ = "sale"
    __table_args__ = (
        UniqueConstraint("tenant_id", "reference_number", name="uq_sale_tenant_reference"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, ForeignKey("tenant.id"), nullable=False)
    # Stable invoice reference; doubles as the FBR idempotency key.
    reference_number: Mapped[str] = mapped_column(Text, nullable=False)
    invoice_type: Mapped[str] = mapped_column(
        VARCHAR(10), nullable=False, default="SALE"
    )  # 'SALE', 'DEBIT', 'CREDIT'
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    # Reference of the invoice a debit/credit note adjusts.
    original_invoice_ref: Mapped[str | None] = mapped_column(Text, nullable=True)

    buyer_ntn: Mapped[str | None] = mapped_column(Text, nullable=True)
    buyer_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    buyer_province: Mapped[str | None] = mapped_column(Text, nullable=True)
    buyer_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    buyer_registration_type: Mapped[str | None] = mapped_column(Text, nullable=True)

    subtotal: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))

    fbr_status: Mapped[str] = mapped_column(
        VARCHAR(20), nullable=False, default="not_queued"
    )  # 'not_queued', 'pending', 'submitted', 'synced', 'failed'
    fbr_invoice_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    fbr_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    fbr_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    items: Mapped[list["SaleItem"]] = relationship(
        back_populates="sale",
        order_by="SaleItem.id",
        cascade="all, delete-orphan",
    )


class SaleItem(Base):
    """One line of a sale."""

    __tablename__ = "sale_item"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sale_id: Mapped[int] = mapped_column(Integer, ForeignKey("sale.id"), nullable=False)
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    hs_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    unit_of_measure: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    discount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    # Key into the tax rate schedule, e.g. 'standard_rate', 'third_schedule'.
    tax_category: Mapped[str] = mapped_column(Text, nullable=False, default="standard_rate")
    # Explicit overrides; when null the schedule rate and computed tax are used.
    tax_rate: Mapped[Decimal | None] = mapped_column(PERCENT, nullable=True)
    tax_amount: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    # Printed retail price for third schedule goods.
    retail_price: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    sro_schedule_no: Mapped[str | None] = mapped_column(Text, nullable=True)
    sro_item_serial_no: Mapped[str | None] = mapped_column(Text, nullable=True)

    sale: Mapped[Sale] = relationship(back_populates="items")
