# src/pos_fiscal/scripts/refresh_reference.py
"""
Pull FBR reference tables (provinces, HS codes, units of measure) into the
database and seed the default tax rate schedule.

Run daily, or after FBR publishes new codes. Running processes pick the new
data up on their next cache refresh.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from pos_fiscal.db.session import SessionLocal
from pos_fiscal.services.authority import AuthorityClient, AuthorityError
from pos_fiscal.services.reference_data import refresh_reference_tables, seed_tax_rates

logger = logging.getLogger("pos_fiscal.scripts.refresh_reference")


async def refresh(seed_only: bool) -> dict[str, int]:
    with SessionLocal() as db:
        if seed_only:
            added = seed_tax_rates(db)
            db.commit()
            return {"tax_rate": added}

        client = AuthorityClient()
        try:
            return await refresh_reference_tables(db, client)
        finally:
            await client.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Refresh FBR reference data")
    parser.add_argument(
        "--seed-only",
        action="store_true",
        help="Only seed the default tax rates, without calling FBR",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        counts = asyncio.run(refresh(args.seed_only))
    except AuthorityError as exc:
        logger.error("FBR reference lookup failed: %s", exc)
        return 1
    except SQLAlchemyError:
        logger.error("Could not store reference data", exc_info=True)
        return 1

    for kind, count in counts.items():
        print(f"[refresh_reference] {kind}: {count}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
