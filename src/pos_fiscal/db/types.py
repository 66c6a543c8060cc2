# src/pos_fiscal/db/types.py
"""Column types shared by the fiscal models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Numeric
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator

from pos_fiscal.db.time import as_utc

# Monetary amounts: 18 digits, 2 decimal places (PKR paisa)
MONEY = Numeric(18, 2)

# Quantities allow fractional units of measure (e.g. KG, litres)
QUANTITY = Numeric(18, 4)

# Percent rate, 0-100 with two decimals
PERCENT = Numeric(5, 2)


class UTCDateTime(TypeDecorator[datetime]):
    """Timestamp stored as naive UTC and always loaded as timezone-aware UTC.

    SQLite drops tzinfo on the way out, so lease and backoff comparisons in
    Python would otherwise mix naive and aware datetimes.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        return as_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: Any, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)
