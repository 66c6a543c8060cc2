# src/pos_fiscal/services/transformer.py
"""Sale to FBR wire payload transformation.

Both public functions are pure: they read the sale, the tenant and a reference
data snapshot and return a value. Nothing is written, so the same inputs always
produce the same payload, and ``validate`` reports every problem at once.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pos_fiscal.core.errors import InvoiceValidationError, Violation
from pos_fiscal.models import Sale, SaleItem, Tenant
from pos_fiscal.schemas.wire import WireItem, WirePayload
from pos_fiscal.services.reference_data import ReferenceDataSet, TaxSchedule, normalize_hs_code

INVOICE_TYPE_LABELS = {
    "SALE": "Sale Invoice",
    "DEBIT": "Debit Note",
    "CREDIT": "Credit Note",
}
NOTE_TYPES = frozenset({"DEBIT", "CREDIT"})

DEFAULT_BUYER_NTN = "0000000000000"
DEFAULT_BUYER_NAME = "Walk-in Customer"
DEFAULT_BUYER_ADDRESS = "N/A"
DEFAULT_REGISTRATION_TYPE = "Unregistered"

HS_CODE_PATTERN = re.compile(r"^\d{6,10}$")
MAX_TAX_RATE = Decimal("100")
ZERO = Decimal("0")
CENTS = Decimal("0.01")
QUANTITY_PLACES = Decimal("0.0001")


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return ZERO
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _round(value: Decimal, places: Decimal = CENTS) -> Decimal:
    return value.quantize(places, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineAmounts:
    """Tax math for one sale line, rounded to paisa."""

    rate: Decimal
    value_excluding_tax: Decimal
    retail_value: Decimal
    sales_tax: Decimal
    discount: Decimal

    @property
    def total(self) -> Decimal:
        return (self.value_excluding_tax or self.retail_value) + self.sales_tax


def compute_line(item: SaleItem, schedule: TaxSchedule) -> LineAmounts:
    """Apply the tax schedule to a line.

    Third schedule goods are taxed on the printed retail price, which is
    reported in ``fixedNotifiedValueOrRetailPrice`` with a zero value
    excluding sales tax.
    """
    quantity = _decimal(item.quantity) or ZERO
    unit_price = _decimal(item.unit_price) or ZERO
    discount = _decimal(item.discount) or ZERO
    rate = schedule.rate if item.tax_rate is None else (_decimal(item.tax_rate) or ZERO)

    value = quantity * unit_price - discount
    if schedule.retail_priced:
        retail_unit = unit_price if item.retail_price is None else _decimal(item.retail_price) or ZERO
        retail_value = retail_unit * quantity
        taxable = retail_value
        value = ZERO
    else:
        retail_value = ZERO
        taxable = value

    if item.tax_amount is not None:
        sales_tax = _decimal(item.tax_amount) or ZERO
    else:
        sales_tax = taxable * rate / Decimal(100)

    return LineAmounts(
        rate=rate,
        value_excluding_tax=_round(value),
        retail_value=_round(retail_value),
        sales_tax=_round(sales_tax),
        discount=_round(discount),
    )


def _check_amount(
    violations: list[Violation], field: str, raw: Any, *, required: bool = False
) -> None:
    if raw is None:
        if required:
            violations.append(Violation(field, "missing_value", f"{field} is required"))
        return
    value = _decimal(raw)
    if value is None:
        violations.append(Violation(field, "invalid_number", f"{field} is not a number"))
    elif value < ZERO:
        violations.append(Violation(field, "negative_value", f"{field} must not be negative"))


def validate(sale: Sale, tenant: Tenant, reference: ReferenceDataSet) -> list[Violation]:
    """Return every reason the sale cannot be submitted (empty when valid)."""
    violations: list[Violation] = []

    invoice_type = (sale.invoice_type or "").upper()
    if invoice_type not in INVOICE_TYPE_LABELS:
        violations.append(
            Violation(
                "invoice_type",
                "invalid_invoice_type",
                f"Invoice type {sale.invoice_type!r} must be one of SALE, DEBIT, CREDIT",
            )
        )
    elif invoice_type in NOTE_TYPES and not sale.original_invoice_ref:
        violations.append(
            Violation(
                "original_invoice_ref",
                "missing_original_invoice",
                f"A {INVOICE_TYPE_LABELS[invoice_type]} must reference the original invoice",
            )
        )

    if sale.invoice_date is None:
        violations.append(Violation("invoice_date", "missing_value", "Invoice date is required"))

    if not tenant.ntn:
        violations.append(
            Violation("seller_ntn", "missing_value", "Seller NTN is not set in the tenant settings")
        )
    if not tenant.province or not reference.has_province(tenant.province):
        violations.append(
            Violation(
                "seller_province",
                "invalid_province",
                f"Seller province {tenant.province!r} is not a valid FBR province",
            )
        )
    if sale.buyer_province and not reference.has_province(sale.buyer_province):
        violations.append(
            Violation(
                "buyer_province",
                "invalid_province",
                f"Buyer province {sale.buyer_province!r} is not a valid FBR province",
            )
        )

    items = list(sale.items or [])
    if not items:
        violations.append(Violation("items", "no_items", "Invoice has no line items"))

    for index, item in enumerate(items, start=1):
        prefix = f"items[{index}]"
        name = item.product_name or prefix

        hs_code = (item.hs_code or "").strip()
        if not hs_code:
            violations.append(
                Violation(f"{prefix}.hs_code", "missing_hs_code", f"{name}: HS code is missing")
            )
        elif not HS_CODE_PATTERN.match(normalize_hs_code(hs_code)):
            violations.append(
                Violation(
                    f"{prefix}.hs_code",
                    "invalid_hs_code",
                    f"{name}: HS code {hs_code} must be 6 to 10 digits",
                )
            )
        elif not reference.has_hs_code(hs_code):
            violations.append(
                Violation(
                    f"{prefix}.hs_code",
                    "unknown_hs_code",
                    f"{name}: HS code {hs_code} is not in the FBR reference data",
                )
            )

        uom = (item.unit_of_measure or "").strip()
        if not uom:
            violations.append(
                Violation(
                    f"{prefix}.unit_of_measure",
                    "missing_uom",
                    f"{name}: unit of measure is missing",
                )
            )
        elif not reference.has_unit_of_measure(uom):
            violations.append(
                Violation(
                    f"{prefix}.unit_of_measure",
                    "unknown_uom",
                    f"{name}: unit of measure {uom!r} is not in the FBR reference data",
                )
            )

        _check_amount(violations, f"{prefix}.quantity", item.quantity, required=True)
        _check_amount(violations, f"{prefix}.unit_price", item.unit_price, required=True)
        _check_amount(violations, f"{prefix}.discount", item.discount)
        _check_amount(violations, f"{prefix}.tax_amount", item.tax_amount)
        _check_amount(violations, f"{prefix}.retail_price", item.retail_price)

        schedule = reference.tax_schedule(item.tax_category or "")
        if schedule is None:
            violations.append(
                Violation(
                    f"{prefix}.tax_category",
                    "unknown_tax_category",
                    f"{name}: tax category {item.tax_category!r} has no tax rate configured",
                )
            )

        rate = schedule.rate if schedule and item.tax_rate is None else _decimal(item.tax_rate)
        if rate is None or not ZERO <= rate <= MAX_TAX_RATE:
            violations.append(
                Violation(
                    f"{prefix}.tax_rate",
                    "invalid_tax_rate",
                    f"{name}: tax rate must be between 0 and 100",
                )
            )
        elif schedule is not None and all(
            value is not None and value >= ZERO
            for value in (
                _decimal(item.quantity),
                _decimal(item.unit_price),
                _decimal(item.discount),
            )
        ):
            amounts = compute_line(item, schedule)
            if amounts.value_excluding_tax < ZERO:
                violations.append(
                    Violation(
                        f"{prefix}.discount",
                        "discount_exceeds_value",
                        f"{name}: discount exceeds the line value",
                    )
                )

    return violations


def _wire_item(item: SaleItem, schedule: TaxSchedule) -> WireItem:
    amounts = compute_line(item, schedule)
    quantity = _round(_decimal(item.quantity) or ZERO, QUANTITY_PLACES)
    return WireItem(
        hs_code=(item.hs_code or "").strip(),
        product_description=item.product_name,
        rate=f"{amounts.rate.normalize():f}%",
        uom=(item.unit_of_measure or "").strip(),
        quantity=float(quantity),
        total_values=float(amounts.total),
        value_sales_excluding_st=float(amounts.value_excluding_tax),
        fixed_notified_value_or_retail_price=float(amounts.retail_value),
        sales_tax_applicable=float(amounts.sales_tax),
        discount=float(amounts.discount),
        sale_type=schedule.sale_type,
        sro_schedule_no=item.sro_schedule_no or "",
        sro_item_serial_no=item.sro_item_serial_no or "",
    )


def transform(sale: Sale, tenant: Tenant, reference: ReferenceDataSet) -> WirePayload:
    """Build the wire payload for a sale.

    Raises:
        InvoiceValidationError: With the full violation list when the sale is
            not submittable; no partial payload is produced
    """
    violations = validate(sale, tenant, reference)
    if violations:
        raise InvoiceValidationError(violations)

    invoice_type = sale.invoice_type.upper()
    items = list(sale.items)
    schedules = [reference.tax_schedule(item.tax_category) for item in items]
    wire_items = [
        _wire_item(item, schedule) for item, schedule in zip(items, schedules) if schedule
    ]

    if invoice_type in NOTE_TYPES:
        invoice_ref = sale.original_invoice_ref or ""
    else:
        invoice_ref = sale.reference_number

    return WirePayload(
        invoice_type=INVOICE_TYPE_LABELS[invoice_type],
        invoice_date=sale.invoice_date.strftime("%Y-%m-%d"),
        seller_ntn_cnic=tenant.ntn,
        seller_business_name=tenant.business_name,
        seller_province=tenant.province,
        seller_address=tenant.address or DEFAULT_BUYER_ADDRESS,
        buyer_ntn_cnic=sale.buyer_ntn or DEFAULT_BUYER_NTN,
        buyer_business_name=sale.buyer_name or DEFAULT_BUYER_NAME,
        buyer_province=sale.buyer_province or tenant.province,
        buyer_address=sale.buyer_address or DEFAULT_BUYER_ADDRESS,
        buyer_registration_type=sale.buyer_registration_type or DEFAULT_REGISTRATION_TYPE,
        invoice_ref_no=invoice_ref,
        scenario_id=schedules[0].scenario_id if schedules and schedules[0] else "SN001",
        items=wire_items,
    )
