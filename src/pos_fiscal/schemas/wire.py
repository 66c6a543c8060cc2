# src/pos_fiscal/schemas/wire.py
"""Pydantic models for the FBR Digital Invoicing wire format."""

import hashlib
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class WireItem(BaseModel):
    """One invoice line as the authority expects it."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    hs_code: str = Field(alias="hsCode")
    product_description: str = Field(alias="productDescription")
    rate: str  # e.g. "18%"
    uom: str = Field(alias="uoM")
    quantity: float
    total_values: float = Field(alias="totalValues")
    value_sales_excluding_st: float = Field(alias="valueSalesExcludingST")
    fixed_notified_value_or_retail_price: float = Field(alias="fixedNotifiedValueOrRetailPrice")
    sales_tax_applicable: float = Field(alias="salesTaxApplicable")
    sales_tax_withheld_at_source: float = Field(default=0.0, alias="salesTaxWithheldAtSource")
    extra_tax: float = Field(default=0.0, alias="extraTax")
    further_tax: float = Field(default=0.0, alias="furtherTax")
    sro_schedule_no: str = Field(default="", alias="sroScheduleNo")
    fed_payable: float = Field(default=0.0, alias="fedPayable")
    discount: float = 0.0
    sale_type: str = Field(alias="saleType")
    sro_item_serial_no: str = Field(default="", alias="sroItemSerialNo")


class WirePayload(BaseModel):
    """Invoice header plus items, posted to ``/postinvoicedata``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    invoice_type: str = Field(alias="invoiceType")
    invoice_date: str = Field(alias="invoiceDate")
    seller_ntn_cnic: str = Field(alias="sellerNTNCNIC")
    seller_business_name: str = Field(alias="sellerBusinessName")
    seller_province: str = Field(alias="sellerProvince")
    seller_address: str = Field(alias="sellerAddress")
    buyer_ntn_cnic: str = Field(alias="buyerNTNCNIC")
    buyer_business_name: str = Field(alias="buyerBusinessName")
    buyer_province: str = Field(alias="buyerProvince")
    buyer_address: str = Field(alias="buyerAddress")
    buyer_registration_type: str = Field(alias="buyerRegistrationType")
    invoice_ref_no: str = Field(alias="invoiceRefNo")
    scenario_id: str = Field(alias="scenarioId")
    items: list[WireItem]

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def canonical_json(self) -> str:
        """Return the deterministic JSON text that is frozen into the queue."""
        return json.dumps(
            self.to_wire(),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )

    def payload_hash(self) -> str:
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()
