# src/pos_fiscal/models/tenant.py
"""SQLAlchemy models for tenants and their FBR credentials."""

from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Integer, LargeBinary, Text
from sqlalchemy.orm import Mapped, mapped_column

from pos_fiscal.db.session import Base
from pos_fiscal.db.time import utcnow
from pos_fiscal.db.types import UTCDateTime


class Tenant(Base):
    """A registered business; supplies the seller fields of every invoice."""

    __tablename__ = "tenant"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_name: Mapped[str] = mapped_column(Text, nullable=False)
    # Seller NTN (7/9 digits) or CNIC (13 digits).
    ntn: Mapped[str] = mapped_column(Text, nullable=False)
    province: Mapped[str] = mapped_column(Text, nullable=False)
    address: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class TenantCredential(Base):
    """Encrypted FBR API token for one tenant.

    Only AES-GCM ciphertext, nonce and tag are stored; the plaintext token
    exists in memory for the duration of a single call.
    """

    __tablename__ = "tenant_credential"

    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tenant.id"), primary_key=True
    )
    token_ciphertext: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    nonce: Mapped[bytes] = mapped_column(LargeBinary(12), nullable=False)
    tag: Mapped[bytes] = mapped_column(LargeBinary(16), nullable=False)
    base_url: Mapped[str] = mapped_column(Text, nullable=False)
    sandbox_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow
    )
