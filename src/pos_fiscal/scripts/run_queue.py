# src/pos_fiscal/scripts/run_queue.py
"""
Cron entry point that drains one batch of the FBR submission queue.

Run it every few minutes:

    python -m pos_fiscal.scripts.run_queue --batch-size 10 --deadline 240

Exits 0 when the run completed, even if individual entries failed; exits 1
only when the run itself could not happen (database unreachable, no master
key).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from pos_fiscal.core.errors import ConfigurationError
from pos_fiscal.core.settings import settings
from pos_fiscal.services.authority import get_authority_client
from pos_fiscal.services.queue_worker import QueueWorker, RunSummary
from pos_fiscal.services.vault import get_credential_vault

logger = logging.getLogger("pos_fiscal.scripts.run_queue")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Submit due sales to FBR")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.queue_batch_size,
        help="Maximum entries claimed in this run (default: QUEUE_BATCH_SIZE)",
    )
    parser.add_argument(
        "--deadline",
        type=float,
        default=settings.worker_run_deadline_seconds,
        help="Seconds after which unstarted entries are released (default: "
        "WORKER_RUN_DEADLINE_SECONDS)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


async def run(batch_size: int, deadline: float) -> RunSummary:
    client = get_authority_client()
    try:
        worker = QueueWorker(client=client, batch_size=batch_size, run_deadline=deadline)
        return await worker.run_once()
    finally:
        await client.close()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        get_credential_vault()
        summary = asyncio.run(run(args.batch_size, args.deadline))
    except ConfigurationError as exc:
        logger.error("Queue run aborted: %s", exc.message)
        return 1
    except SQLAlchemyError:
        logger.error("Queue run aborted: database unavailable", exc_info=True)
        return 1

    logger.info(
        "Processed %d entries: %d synced, %d retrying, %d dead-lettered, %d config errors, "
        "%d taken over by another run",
        summary.claimed,
        summary.synced,
        summary.retrying,
        summary.dead_letter,
        summary.config_errors,
        summary.lease_lost,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
