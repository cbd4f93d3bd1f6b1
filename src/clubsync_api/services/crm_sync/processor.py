"""Background processor draining the CRM sync queue."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from clubsync_api.core.settings import settings
from clubsync_api.models.crm_sync import CrmSyncActionTypeEnum, CrmSyncQueueEntry, CrmSyncStatusEnum
from clubsync_api.observability.crm_sync import get_crm_sync_store
from clubsync_api.observability.tracing import get_tracer
from clubsync_api.services.crm.client import CrmClient
from clubsync_api.services.crm.errors import CrmPermanentError
from clubsync_api.services.membership.store import MembershipStateStore, SqlAlchemyStateStore

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]
StoreFactory = Callable[[AsyncSession], MembershipStateStore]

# Persist the last loop error across processor instances for observability/tests
_LAST_LOOP_ERROR_MESSAGE: str | None = None
_LAST_LOOP_ERROR_AT: datetime | None = None

_tracer = get_tracer(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MissingTierError(RuntimeError):
    """Raised when a queue entry references a tier that no longer exists."""

    def __init__(self, tier_id: UUID | None) -> None:
        super().__init__(f"Tier {tier_id} no longer exists")
        self.tier_id = tier_id


def is_permanent_failure(exc: BaseException) -> bool:
    return isinstance(exc, (CrmPermanentError, MissingTierError))


@dataclass(slots=True, frozen=True)
class _ClaimedWork:
    """Detached copy of an entry so CRM calls never touch ORM state."""

    id: UUID
    action_type: CrmSyncActionTypeEnum
    customer_crm_id: str
    enrollment_id: UUID
    old_tier_id: UUID | None
    new_tier_id: UUID | None
    attempts: int
    max_attempts: int

    @classmethod
    def from_entry(cls, entry: CrmSyncQueueEntry) -> "_ClaimedWork":
        return cls(
            id=entry.id,
            action_type=CrmSyncActionTypeEnum(entry.action_type),
            customer_crm_id=entry.customer_crm_id,
            enrollment_id=entry.enrollment_id,
            old_tier_id=entry.old_tier_id,
            new_tier_id=entry.new_tier_id,
            attempts=entry.attempts or 0,
            max_attempts=entry.max_attempts or settings.crm_sync_max_attempts,
        )


@dataclass
class CrmSyncRunSummary:
    """Outcome counts for one ``process_due_entries`` invocation."""

    selected: int = 0
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    released: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class CrmSyncProcessorMetrics:
    """Simple in-memory metrics for monitoring queue processing."""

    runs: int = 0
    entries_completed: int = 0
    entries_failed: int = 0
    entries_retried: int = 0
    claims_lost: int = 0
    stale_claims_released: int = 0
    loop_errors: int = 0
    last_run_started_at: datetime | None = None
    last_run_finished_at: datetime | None = None
    last_run_duration_seconds: float | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "runs": self.runs,
            "entries_completed": self.entries_completed,
            "entries_failed": self.entries_failed,
            "entries_retried": self.entries_retried,
            "claims_lost": self.claims_lost,
            "stale_claims_released": self.stale_claims_released,
            "loop_errors": self.loop_errors,
            "last_run_started_at": self.last_run_started_at.isoformat() if self.last_run_started_at else None,
            "last_run_finished_at": self.last_run_finished_at.isoformat() if self.last_run_finished_at else None,
            "last_run_duration_seconds": self.last_run_duration_seconds,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
        }


class CrmSyncQueueProcessor:
    """Claims due queue entries and applies them to the CRM.

    Every claim is an atomic ``pending -> processing`` update committed before
    the CRM call, so concurrent processors never work the same entry.
    Per-entry failures only change queue state; they are never raised.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        crm_client: CrmClient,
        *,
        store_factory: StoreFactory = SqlAlchemyStateStore,
        poll_interval_seconds: int | None = None,
        batch_size: int | None = None,
        retry_base_delay_seconds: int | None = None,
        retry_max_delay_seconds: int | None = None,
        stale_claim_seconds: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._crm = crm_client
        self._store_factory = store_factory
        self._poll_interval = poll_interval_seconds or settings.crm_sync_poll_interval_seconds
        self._batch_size = batch_size or settings.crm_sync_batch_size
        self._retry_base_delay = retry_base_delay_seconds or settings.crm_sync_retry_base_delay_seconds
        self._retry_max_delay = retry_max_delay_seconds or settings.crm_sync_retry_max_delay_seconds
        self._stale_claim_seconds = stale_claim_seconds or settings.crm_sync_stale_claim_seconds
        self._running = False
        self._metrics = CrmSyncProcessorMetrics()
        self._observability = get_crm_sync_store()
        if _LAST_LOOP_ERROR_MESSAGE is not None:
            self._metrics.last_error = _LAST_LOOP_ERROR_MESSAGE
            self._metrics.last_error_at = _LAST_LOOP_ERROR_AT

    @property
    def metrics(self) -> CrmSyncProcessorMetrics:
        return self._metrics

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def poll_interval(self) -> int:
        return self._poll_interval

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def start(self) -> None:
        """Run the polling loop until `stop` is called."""
        if self._running:
            return

        logger.info("Starting CRM sync processor", poll_interval=self._poll_interval, batch_size=self._batch_size)
        self._running = True

        try:
            while self._running:
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # pragma: no cover
                    self._record_loop_error(exc)
                    logger.exception("CRM sync processor iteration failed")

                if not self._running:
                    break

                await asyncio.sleep(self._poll_interval)
        finally:
            self._running = False
            logger.info("CRM sync processor stopped")

    def stop(self) -> None:
        """Signal the loop to stop after the current iteration."""
        self._running = False

    async def run_once(self, batch_size: int | None = None) -> CrmSyncRunSummary:
        """Release stale claims, then process one batch."""
        released = await self.release_stale_claims()
        summary = await self.process_due_entries(batch_size or self._batch_size)
        summary.released = released
        return summary

    async def process_due_entries(self, batch_size: int | None = None) -> CrmSyncRunSummary:
        limit = batch_size or self._batch_size
        start_time = _utcnow()
        self._metrics.last_run_started_at = start_time
        self._metrics.runs += 1
        summary = CrmSyncRunSummary()

        session = await self._acquire_session()
        store = self._store_factory(session)
        try:
            entries = await store.select_due_entries(_utcnow(), limit)
            work_items = [_ClaimedWork.from_entry(entry) for entry in entries]
            await store.commit()
            summary.selected = len(work_items)
            if not work_items:
                logger.debug("No due CRM sync entries")
                return summary

            logger.info("Processing CRM sync entries", count=len(work_items))
            for work in work_items:
                claimed = await store.claim_entry(work.id, _utcnow())
                await store.commit()
                if not claimed:
                    summary.skipped += 1
                    self._metrics.claims_lost += 1
                    logger.debug("CRM sync entry claimed elsewhere", entry_id=str(work.id))
                    continue
                summary.claimed += 1
                await self._process_claimed(store, replace(work, attempts=work.attempts + 1), summary)
        except Exception as exc:
            self._metrics.last_error = str(exc)
            self._metrics.last_error_at = _utcnow()
            raise
        finally:
            await session.close()
            finished = _utcnow()
            self._metrics.last_run_finished_at = finished
            self._metrics.last_run_duration_seconds = (finished - start_time).total_seconds()

        logger.info("CRM sync batch finished", **summary.as_dict())
        return summary

    async def release_stale_claims(self) -> int:
        """Return entries stuck in processing past the claim timeout to the queue."""
        cutoff = _utcnow() - timedelta(seconds=self._stale_claim_seconds)
        session = await self._acquire_session()
        store = self._store_factory(session)
        released = 0
        try:
            stale = await store.list_stale_claims(cutoff, self._batch_size)
            for entry in stale:
                work = _ClaimedWork.from_entry(entry)
                now = _utcnow()
                if work.attempts >= work.max_attempts:
                    changed = await store.transition_entry_status(
                        work.id,
                        CrmSyncStatusEnum.PROCESSING,
                        CrmSyncStatusEnum.FAILED,
                        error_message="Claim expired after final attempt",
                        next_retry_at=None,
                    )
                else:
                    changed = await store.transition_entry_status(
                        work.id,
                        CrmSyncStatusEnum.PROCESSING,
                        CrmSyncStatusEnum.PENDING,
                        error_message="Claim expired before completion",
                        next_retry_at=now,
                    )
                if changed:
                    released += 1
                    logger.warning("Released stale CRM sync claim", entry_id=str(work.id), attempts=work.attempts)
            await store.commit()
        finally:
            await session.close()
        self._metrics.stale_claims_released += released
        return released

    async def requeue_failed_entry(self, entry_id: UUID) -> bool:
        """Give a ``failed`` entry a fresh set of attempts.

        Refused once a newer transition for the same customer exists; replaying
        the failed change would undo it.
        """
        session = await self._acquire_session()
        store = self._store_factory(session)
        try:
            entry = await store.get_entry(entry_id)
            if entry is None or entry.status != CrmSyncStatusEnum.FAILED:
                return False
            if await store.has_later_entries(entry):
                logger.warning(
                    "Refusing to requeue CRM sync entry with newer transitions",
                    entry_id=str(entry_id),
                    customer_crm_id=entry.customer_crm_id,
                )
                return False
            changed = await store.transition_entry_status(
                entry_id,
                CrmSyncStatusEnum.FAILED,
                CrmSyncStatusEnum.PENDING,
                attempts=0,
                next_retry_at=_utcnow(),
                error_message=None,
                completed_at=None,
            )
            await store.commit()
        finally:
            await session.close()
        if changed:
            logger.info("Requeued failed CRM sync entry", entry_id=str(entry_id))
        return changed

    async def _process_claimed(
        self, store: MembershipStateStore, work: _ClaimedWork, summary: CrmSyncRunSummary
    ) -> None:
        with _tracer.start_as_current_span("crm_sync.process_entry") as span:
            span.set_attribute("crm_sync.entry_id", str(work.id))
            span.set_attribute("crm_sync.action_type", work.action_type.value)
            span.set_attribute("crm_sync.attempt", work.attempts)
            try:
                await self._execute(store, work)
            except Exception as exc:
                span.record_exception(exc)
                await store.rollback()
                await self._handle_failure(store, work, exc, summary)
                return

            await store.transition_entry_status(
                work.id,
                CrmSyncStatusEnum.PROCESSING,
                CrmSyncStatusEnum.COMPLETED,
                completed_at=_utcnow(),
                error_message=None,
                next_retry_at=None,
            )
            await store.commit()
            summary.completed += 1
            self._metrics.entries_completed += 1
            self._observability.record_completed(work.action_type.value)
            logger.info(
                "CRM sync entry completed",
                entry_id=str(work.id),
                action_type=work.action_type.value,
                attempts=work.attempts,
            )

    async def _execute(self, store: MembershipStateStore, work: _ClaimedWork) -> None:
        """Apply the entry's membership change; move_tier runs as one unit."""
        removals: list[str] = []
        additions: list[str] = []
        if work.action_type in (CrmSyncActionTypeEnum.REMOVE_FROM_TIER, CrmSyncActionTypeEnum.MOVE_TIER):
            promotion_ids = await store.list_active_promotion_ids(work.old_tier_id)
            if promotion_ids is None:
                raise MissingTierError(work.old_tier_id)
            removals = promotion_ids
        if work.action_type in (CrmSyncActionTypeEnum.ADD_TO_TIER, CrmSyncActionTypeEnum.MOVE_TIER):
            promotion_ids = await store.list_active_promotion_ids(work.new_tier_id)
            if promotion_ids is None:
                raise MissingTierError(work.new_tier_id)
            additions = promotion_ids

        for promotion_id in removals:
            await self._crm.remove_customer_from_promotion(work.customer_crm_id, promotion_id)
        for promotion_id in additions:
            await self._crm.add_customer_to_promotion(work.customer_crm_id, promotion_id)

    async def _handle_failure(
        self,
        store: MembershipStateStore,
        work: _ClaimedWork,
        exc: Exception,
        summary: CrmSyncRunSummary,
    ) -> None:
        error_message = f"{type(exc).__name__}: {exc}"
        self._metrics.last_error = error_message
        self._metrics.last_error_at = _utcnow()
        permanent = is_permanent_failure(exc)

        if permanent or work.attempts >= work.max_attempts:
            changed = await store.transition_entry_status(
                work.id,
                CrmSyncStatusEnum.PROCESSING,
                CrmSyncStatusEnum.FAILED,
                error_message=error_message,
                next_retry_at=None,
            )
            await store.commit()
            if changed:
                summary.failed += 1
                self._metrics.entries_failed += 1
                self._observability.record_failure(work.action_type.value, str(work.id), error_message)
            logger.error(
                "CRM sync entry failed",
                entry_id=str(work.id),
                action_type=work.action_type.value,
                attempts=work.attempts,
                max_attempts=work.max_attempts,
                permanent=permanent,
                error=error_message,
            )
            return

        delay_seconds = self._compute_retry_delay(work.attempts)
        next_retry_at = _utcnow() + timedelta(seconds=delay_seconds)
        changed = await store.transition_entry_status(
            work.id,
            CrmSyncStatusEnum.PROCESSING,
            CrmSyncStatusEnum.PENDING,
            error_message=error_message,
            next_retry_at=next_retry_at,
        )
        await store.commit()
        if changed:
            summary.retried += 1
            self._metrics.entries_retried += 1
            self._observability.record_retry(work.action_type.value, next_retry_at, delay_seconds)
        logger.warning(
            "CRM sync entry scheduled for retry",
            entry_id=str(work.id),
            action_type=work.action_type.value,
            attempts=work.attempts,
            max_attempts=work.max_attempts,
            next_retry_at=next_retry_at.isoformat(),
            error=error_message,
        )

    def _compute_retry_delay(self, attempts: int) -> int:
        """Exponential backoff: base, 2x base, 4x base ... capped."""
        exponent = max(attempts - 1, 0)
        return min(self._retry_max_delay, self._retry_base_delay * (2 ** exponent))

    def _record_loop_error(self, exc: Exception) -> None:
        global _LAST_LOOP_ERROR_MESSAGE, _LAST_LOOP_ERROR_AT
        self._metrics.loop_errors += 1
        self._metrics.last_error = str(exc)
        self._metrics.last_error_at = _utcnow()
        _LAST_LOOP_ERROR_MESSAGE = self._metrics.last_error
        _LAST_LOOP_ERROR_AT = self._metrics.last_error_at

    async def _acquire_session(self) -> AsyncSession:
        """Create or await an async session from the configured factory."""
        session_or_awaitable = self._session_factory()
        if asyncio.iscoroutine(session_or_awaitable):
            return await session_or_awaitable
        return session_or_awaitable

    def health_snapshot(self) -> dict[str, Any]:
        """Return a serializable snapshot of processor health."""
        return {
            "running": self.is_running,
            "poll_interval_seconds": self._poll_interval,
            "batch_size": self._batch_size,
            "retry_base_delay_seconds": self._retry_base_delay,
            "retry_max_delay_seconds": self._retry_max_delay,
            "metrics": self._metrics.snapshot(),
        }


__all__ = [
    "CrmSyncProcessorMetrics",
    "CrmSyncQueueProcessor",
    "CrmSyncRunSummary",
    "MissingTierError",
    "is_permanent_failure",
]
