# tests/factories.py
"""Builders shared by the test modules."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any

from pos_fiscal.models import Sale, SaleItem


class FakeClock:
    """Controllable UTC clock for queue and worker tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 15, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def build_item(**overrides: Any) -> SaleItem:
    values: dict[str, Any] = {
        "product_name": "Basmati Rice 5kg",
        "hs_code": "0101.2100",
        "unit_of_measure": "KG",
        "quantity": Decimal("2"),
        "unit_price": Decimal("500.00"),
        "discount": Decimal("0"),
        "tax_category": "standard_rate",
    }
    values.update(overrides)
    return SaleItem(**values)


def build_sale(items: list[SaleItem] | None = None, **overrides: Any) -> Sale:
    values: dict[str, Any] = {
        "tenant_id": None,
        "reference_number": "INV-0001",
        "invoice_type": "SALE",
        "invoice_date": date(2026, 10, 15),
        "subtotal": Decimal("0"),
        "tax_amount": Decimal("0"),
        "discount_amount": Decimal("0"),
        "total_amount": Decimal("0"),
        "fbr_status": "not_queued",
    }
    values.update(overrides)
    sale = Sale(**values)
    sale.items = items if items is not None else [build_item()]
    return sale
