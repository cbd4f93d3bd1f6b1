"""Job that expires lapsed enrollments and queues their CRM removal."""

# meta: job: enrollment-expiration

from __future__ import annotations

import datetime as dt
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from clubsync_api.services.membership.enrollments import EnrollmentService
from clubsync_api.services.membership.store import SqlAlchemyStateStore

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def run_enrollment_expiration(
    *,
    session_factory: SessionFactory,
    now: dt.datetime | None = None,
    limit: int = 500,
) -> Dict[str, Any]:
    """Mark active enrollments past ``expires_at`` as expired."""

    maybe_session = session_factory()
    session: AsyncSession
    if isinstance(maybe_session, AsyncSession):
        session = maybe_session
    else:
        session = await maybe_session

    async with session as managed_session:
        service = EnrollmentService(SqlAlchemyStateStore(managed_session))
        reference = now or dt.datetime.now(dt.timezone.utc)
        changes = await service.expire_due(reference, limit=limit)

        summary = {
            "expired": len(changes),
            "sync_entries": [str(change.sync_entry_id) for change in changes],
        }
        logger.bind(summary=summary).info("Enrollment expiration sweep completed")
        return summary


__all__ = ["run_enrollment_expiration"]
