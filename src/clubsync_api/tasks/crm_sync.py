"""CLI + helpers for CRM sync queue and enrollment maintenance.

External schedulers (Celery beat, cron) trigger the same processing logic
through these helpers without importing FastAPI. The session factory and CRM
client stay injectable for tests and queue runners.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any
from uuid import UUID

from loguru import logger

from clubsync_api.core.settings import settings
from clubsync_api.db.session import async_session
from clubsync_api.jobs.membership.expiration import run_enrollment_expiration
from clubsync_api.services.crm import CrmClient, build_crm_client
from clubsync_api.services.crm_sync import CrmSyncQueueProcessor
from clubsync_api.services.crm_sync.processor import SessionFactory


def _default_session_factory():
    return async_session()


def _build_processor(
    session_factory: SessionFactory | None,
    crm_client: CrmClient | None,
) -> CrmSyncQueueProcessor:
    return CrmSyncQueueProcessor(
        session_factory or _default_session_factory,
        crm_client or build_crm_client(settings),
        batch_size=settings.crm_sync_batch_size,
    )


async def run_crm_sync_batch(
    *,
    batch_size: int | None = None,
    session_factory: SessionFactory | None = None,
    crm_client: CrmClient | None = None,
) -> dict[str, int]:
    """Release stale claims and process one batch of due entries."""

    processor = _build_processor(session_factory, crm_client)
    summary = await processor.run_once(batch_size)
    result = summary.as_dict()
    logger.info("CRM sync batch processed", summary=result)
    return result


async def run_enrollment_expiration_sweep(
    *,
    limit: int = 500,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    return await run_enrollment_expiration(session_factory=session_factory or _default_session_factory, limit=limit)


async def requeue_failed_entry(
    entry_id: UUID,
    *,
    session_factory: SessionFactory | None = None,
    crm_client: CrmClient | None = None,
) -> bool:
    processor = _build_processor(session_factory, crm_client)
    return await processor.requeue_failed_entry(entry_id)


def run_crm_sync_batch_sync(
    *,
    batch_size: int | None = None,
    session_factory: SessionFactory | None = None,
    crm_client: CrmClient | None = None,
) -> dict[str, int]:
    """Synchronous helper so Celery/cron jobs can reuse the async processor."""

    return asyncio.run(
        run_crm_sync_batch(batch_size=batch_size, session_factory=session_factory, crm_client=crm_client)
    )


def run_enrollment_expiration_sync(
    *,
    limit: int = 500,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    return asyncio.run(run_enrollment_expiration_sweep(limit=limit, session_factory=session_factory))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CRM sync queue utilities.")
    sub = parser.add_subparsers(dest="command", required=True)

    process = sub.add_parser("process", help="Process due CRM sync entries once.")
    process.add_argument("--batch-size", type=int, default=None, help="Max entries to process.")

    expire = sub.add_parser("expire", help="Expire lapsed enrollments and queue their CRM removal.")
    expire.add_argument("--limit", type=int, default=500)

    requeue = sub.add_parser("requeue", help="Reset a failed entry so it is retried.")
    requeue.add_argument("--entry-id", required=True, help="UUID of the failed queue entry.")

    return parser


async def _async_main(args: argparse.Namespace) -> None:
    if args.command == "process":
        result: Any = await run_crm_sync_batch(batch_size=args.batch_size)
    elif args.command == "expire":
        result = await run_enrollment_expiration_sweep(limit=args.limit)
    elif args.command == "requeue":
        result = {"requeued": await requeue_failed_entry(UUID(args.entry_id))}
    else:  # pragma: no cover - argparse guards this.
        raise ValueError(f"Unsupported command {args.command}")
    print(json.dumps(result, default=str))


def cli() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    asyncio.run(_async_main(args))


if __name__ == "__main__":  # pragma: no cover
    cli()
