"""Drain the CRM sync queue once.

Intended usage: schedule via cron or run by hand after a CRM outage to push
through entries that are waiting on retry.

Example:
    python tooling/scripts/run_crm_sync_queue.py --batch-size 100 --expire
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Process due CRM sync queue entries once")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override the number of entries processed in this run.",
    )
    parser.add_argument(
        "--expire",
        action="store_true",
        help="Expire lapsed enrollments before processing so their removals are picked up.",
    )
    return parser.parse_args()


async def _run(batch_size: int | None, expire: bool) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from clubsync_api.tasks.crm_sync import (  # type: ignore import-position
        run_crm_sync_batch,
        run_enrollment_expiration_sweep,
    )

    if expire:
        expiration = await run_enrollment_expiration_sweep()
        logger.info("Enrollment expiration sweep completed", expired=expiration.get("expired", 0))
    return await run_crm_sync_batch(batch_size=batch_size)


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.batch_size, args.expire))
    logger.success(
        "CRM sync queue run completed",
        completed=summary.get("completed", 0),
        retried=summary.get("retried", 0),
        failed=summary.get("failed", 0),
        released=summary.get("released", 0),
    )
    return 0 if summary.get("failed", 0) == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
