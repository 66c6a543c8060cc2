# src/pos_fiscal/models/__init__.py
"""SQLAlchemy models for the POS fiscal engine."""

from .audit import AuditEvent
from .fbr_queue import QueueEntry
from .reference import ReferenceCode, TaxRate
from .sale import Sale, SaleItem
from .tenant import Tenant, TenantCredential

__all__ = [
    "AuditEvent",
    "QueueEntry",
    "ReferenceCode", "TaxRate",
    "Sale", "SaleItem",
    "Tenant", "TenantCredential",
]
