"""Worker wiring for periodic enrollment expiration sweeps."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from clubsync_api.core.settings import settings
from clubsync_api.jobs.membership.expiration import run_enrollment_expiration

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class EnrollmentExpirationWorker:
    """Periodically expires lapsed enrollments."""

    # meta: worker: enrollment-expiration

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        limit: int = 500,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.enrollment_expiration_interval_seconds
        self._limit = limit
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info("Enrollment expiration worker started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Enrollment expiration worker stopped")

    async def run_once(self) -> Dict[str, Any]:
        return await run_enrollment_expiration(session_factory=self._session_factory, limit=self._limit)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover
                logger.exception("Enrollment expiration iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue


__all__ = ["EnrollmentExpirationWorker"]
