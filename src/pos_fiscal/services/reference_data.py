# src/pos_fiscal/services/reference_data.py
"""Reference data used to validate invoices before submission.

The authority publishes provinces, HS codes and units of measure; tax
schedules are configured locally. Everything is loaded into an immutable
``ReferenceDataSet`` and shared read-only by every validation and worker run.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pos_fiscal.core.errors import ReferenceDataUnavailableError
from pos_fiscal.core.settings import settings
from pos_fiscal.models import ReferenceCode, TaxRate

if TYPE_CHECKING:
    from pos_fiscal.services.authority import AuthorityClient

logger = logging.getLogger(__name__)

KIND_PROVINCE = "province"
KIND_HS_CODE = "hs_code"
KIND_UOM = "uom"
REFERENCE_KINDS = (KIND_PROVINCE, KIND_HS_CODE, KIND_UOM)

# Provinces accepted by the Digital Invoicing API.
FBR_PROVINCES = (
    "Punjab",
    "Sindh",
    "Khyber Pakhtunkhwa",
    "Balochistan",
    "Islamabad",
    "Azad Kashmir",
    "Gilgit-Baltistan",
)

# Keys the authority uses for the code and description of each lookup.
_RESPONSE_KEYS: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    KIND_PROVINCE: (("stateProvinceDesc", "description"), ("stateProvinceCode",)),
    KIND_HS_CODE: (("hS_CODE", "hsCode", "code"), ("description",)),
    KIND_UOM: (("description", "uoM"), ("uoM_ID",)),
}


@dataclass(frozen=True)
class TaxSchedule:
    """Rate and FBR scenario for a product tax category."""

    category: str
    rate: Decimal
    sale_type: str
    scenario_id: str
    retail_priced: bool = False

    @property
    def rate_label(self) -> str:
        return f"{self.rate.normalize():f}%"


DEFAULT_TAX_SCHEDULES: tuple[TaxSchedule, ...] = (
    TaxSchedule("standard_rate", Decimal("18"), "Goods at standard rate (default)", "SN001"),
    TaxSchedule("reduced_rate", Decimal("5"), "Goods at reduced rate", "SN002"),
    TaxSchedule("exempt", Decimal("0"), "Exempt goods", "SN006"),
    TaxSchedule("third_schedule", Decimal("18"), "3rd Schedule Goods", "SN008", True),
    TaxSchedule("steel", Decimal("18"), "Steel melting and re-rolling", "SN010"),
)


def normalize_hs_code(code: str) -> str:
    """Strip the separators the authority uses in HS codes (``0101.2100``)."""
    return code.replace(".", "").replace(" ", "").strip()


def _fold(value: str) -> str:
    return " ".join(value.split()).casefold()


@dataclass(frozen=True)
class ReferenceDataSet:
    """Immutable, versioned snapshot of all reference tables."""

    version: str
    provinces: frozenset[str]
    hs_codes: frozenset[str]
    units_of_measure: frozenset[str]
    tax_schedules: Mapping[str, TaxSchedule] = field(default_factory=dict, hash=False)

    @classmethod
    def build(
        cls,
        *,
        provinces: Iterable[str] = FBR_PROVINCES,
        hs_codes: Iterable[str] = (),
        units_of_measure: Iterable[str] = (),
        tax_schedules: Iterable[TaxSchedule] = DEFAULT_TAX_SCHEDULES,
    ) -> ReferenceDataSet:
        """Normalize raw codes and compute a content version."""
        province_set = frozenset(_fold(p) for p in provinces if p)
        hs_set = frozenset(normalize_hs_code(c) for c in hs_codes if c)
        uom_set = frozenset(_fold(u) for u in units_of_measure if u)
        schedules = {schedule.category: schedule for schedule in tax_schedules}

        digest = hashlib.sha256()
        for group in (province_set, hs_set, uom_set):
            digest.update("\x1f".join(sorted(group)).encode("utf-8"))
            digest.update(b"\x1e")
        for category in sorted(schedules):
            schedule = schedules[category]
            digest.update(f"{category}:{schedule.rate}:{schedule.scenario_id}".encode())

        return cls(
            version=digest.hexdigest()[:16],
            provinces=province_set,
            hs_codes=hs_set,
            units_of_measure=uom_set,
            tax_schedules=schedules,
        )

    def has_province(self, province: str) -> bool:
        return _fold(province) in self.provinces

    def has_hs_code(self, code: str) -> bool:
        return normalize_hs_code(code) in self.hs_codes

    def has_unit_of_measure(self, uom: str) -> bool:
        return _fold(uom) in self.units_of_measure

    def tax_schedule(self, category: str) -> TaxSchedule | None:
        return self.tax_schedules.get(category)


def load_reference_data(db: Session) -> ReferenceDataSet:
    """Build a reference data set from the ``reference_code`` and ``tax_rate`` tables."""
    codes: dict[str, list[str]] = {kind: [] for kind in REFERENCE_KINDS}
    for kind, code in db.execute(select(ReferenceCode.kind, ReferenceCode.code)):
        codes.setdefault(kind, []).append(code)

    schedules = [
        TaxSchedule(
            category=row.category,
            rate=Decimal(row.rate),
            sale_type=row.sale_type,
            scenario_id=row.scenario_id,
            retail_priced=bool(row.retail_priced),
        )
        for row in db.scalars(select(TaxRate))
    ]

    return ReferenceDataSet.build(
        # The fixed province list applies until the authority list has been pulled.
        provinces=codes[KIND_PROVINCE] or FBR_PROVINCES,
        hs_codes=codes[KIND_HS_CODE],
        units_of_measure=codes[KIND_UOM],
        tax_schedules=schedules or DEFAULT_TAX_SCHEDULES,
    )


class ReferenceDataCache:
    """Time-based cache around a reference data loader.

    A failed reload keeps serving the previous snapshot; only a cache that has
    never loaded successfully raises ``ReferenceDataUnavailableError``.
    """

    def __init__(
        self,
        loader: Callable[[], ReferenceDataSet],
        refresh_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._refresh_interval = (
            settings.reference_refresh_interval_seconds
            if refresh_interval is None
            else refresh_interval
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._current: ReferenceDataSet | None = None
        self._loaded_at = 0.0

    @property
    def version(self) -> str | None:
        return self._current.version if self._current else None

    def invalidate(self) -> None:
        """Force the next ``get`` to reload."""
        with self._lock:
            self._loaded_at = float("-inf")

    def get(self) -> ReferenceDataSet:
        """Return the current snapshot, reloading it when stale."""
        with self._lock:
            now = self._clock()
            if self._current is not None and now - self._loaded_at < self._refresh_interval:
                return self._current

            try:
                data = self._loader()
            except (SQLAlchemyError, OSError, ValueError) as exc:
                if self._current is None:
                    raise ReferenceDataUnavailableError(
                        "FBR reference data is unavailable"
                    ) from exc
                logger.warning(
                    "Reference data reload failed, serving version %s: %s",
                    self._current.version,
                    exc,
                )
                self._loaded_at = now
                return self._current

            if not data.hs_codes and self._current is None:
                raise ReferenceDataUnavailableError(
                    "No HS codes loaded; refresh FBR reference data first"
                )

            if self._current is None or data.version != self._current.version:
                logger.info("Loaded reference data version %s", data.version)
            self._current = data
            self._loaded_at = now
            return data


def _pick(record: Mapping[str, Any], keys: Iterable[str]) -> str | None:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return str(value).strip()
    return None


def upsert_reference_codes(
    db: Session, kind: str, records: Iterable[Mapping[str, Any]]
) -> int:
    """Insert or update the codes of one kind from authority records.

    Returns:
        Number of codes written
    """
    code_keys, description_keys = _RESPONSE_KEYS[kind]
    existing = {
        row.code: row
        for row in db.scalars(select(ReferenceCode).where(ReferenceCode.kind == kind))
    }
    written = 0
    for record in records:
        code = _pick(record, code_keys)
        if not code:
            continue
        description = _pick(record, description_keys)
        row = existing.get(code)
        if row is None:
            row = ReferenceCode(kind=kind, code=code)
            db.add(row)
            existing[code] = row
        row.description = description
        written += 1
    return written


def seed_tax_rates(db: Session) -> int:
    """Insert the default tax schedules that are missing. The caller commits."""
    present = set(db.scalars(select(TaxRate.category)))
    added = 0
    for schedule in DEFAULT_TAX_SCHEDULES:
        if schedule.category in present:
            continue
        db.add(
            TaxRate(
                category=schedule.category,
                rate=schedule.rate,
                sale_type=schedule.sale_type,
                scenario_id=schedule.scenario_id,
                retail_priced=schedule.retail_priced,
            )
        )
        added += 1
    return added


async def refresh_reference_tables(db: Session, client: AuthorityClient) -> dict[str, int]:
    """Pull provinces, HS codes and units of measure from the authority.

    Each kind is committed on its own so one failing lookup does not discard
    the others.

    Returns:
        Mapping of kind to the number of codes written
    """
    counts: dict[str, int] = {}
    for kind in REFERENCE_KINDS:
        records = await client.fetch_reference(kind)
        counts[kind] = upsert_reference_codes(db, kind, records)
        db.commit()
        logger.info("Refreshed %d %s reference codes", counts[kind], kind)
    counts["tax_rate"] = seed_tax_rates(db)
    db.commit()
    return counts


class _ReferenceCacheSingleton:
    """Singleton wrapper for the process-wide reference cache."""

    _instance: ReferenceDataCache | None = None

    @classmethod
    def get_instance(cls) -> ReferenceDataCache:
        if cls._instance is None:
            from pos_fiscal.db.session import SessionLocal

            def _load() -> ReferenceDataSet:
                with SessionLocal() as db:
                    return load_reference_data(db)

            cls._instance = ReferenceDataCache(_load)
        return cls._instance


def get_reference_cache() -> ReferenceDataCache:
    """Return the process-wide reference data cache."""
    return _ReferenceCacheSingleton.get_instance()
