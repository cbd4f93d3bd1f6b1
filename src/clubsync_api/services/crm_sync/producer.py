"""Enqueue CRM reconciliation work for enrollment transitions."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID, uuid4

from loguru import logger

from clubsync_api.core.settings import settings
from clubsync_api.models.crm_sync import CrmSyncActionTypeEnum, CrmSyncQueueEntry, CrmSyncStatusEnum
from clubsync_api.models.membership import MembershipEnrollment
from clubsync_api.observability.crm_sync import CrmSyncObservabilityStore, get_crm_sync_store
from clubsync_api.services.membership.store import MembershipStateStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _derive_action(old_tier_id: UUID | None, new_tier_id: UUID | None) -> CrmSyncActionTypeEnum:
    if old_tier_id is not None and new_tier_id is not None:
        return CrmSyncActionTypeEnum.MOVE_TIER
    if old_tier_id is not None:
        return CrmSyncActionTypeEnum.REMOVE_FROM_TIER
    return CrmSyncActionTypeEnum.ADD_TO_TIER


def _validate_transition(
    action_type: CrmSyncActionTypeEnum, old_tier_id: UUID | None, new_tier_id: UUID | None
) -> None:
    if action_type == CrmSyncActionTypeEnum.ADD_TO_TIER and new_tier_id is None:
        raise ValueError("add_to_tier requires new_tier_id")
    if action_type == CrmSyncActionTypeEnum.REMOVE_FROM_TIER and old_tier_id is None:
        raise ValueError("remove_from_tier requires old_tier_id")
    if action_type == CrmSyncActionTypeEnum.MOVE_TIER and (old_tier_id is None or new_tier_id is None):
        raise ValueError("move_tier requires old_tier_id and new_tier_id")


class CrmSyncQueueProducer:
    """Records one queue entry per enrollment transition.

    Pending entries for the same enrollment are superseded. A never-attempted
    entry folds its undelivered change into the new one; an entry waiting on a
    retry may be partly applied, so the new entry keeps its declared origin and
    must still clear whatever the stale entry touched. Processing entries are
    left alone and the new entry queues behind them. The caller owns the
    transaction; nothing here commits.
    """

    def __init__(
        self,
        store: MembershipStateStore,
        *,
        max_attempts: int | None = None,
        observability: CrmSyncObservabilityStore | None = None,
    ) -> None:
        self._store = store
        self._max_attempts = max_attempts or settings.crm_sync_max_attempts
        self._observability = observability or get_crm_sync_store()

    async def enqueue_transition(
        self,
        enrollment: MembershipEnrollment,
        action_type: CrmSyncActionTypeEnum,
        *,
        old_tier_id: UUID | None = None,
        new_tier_id: UUID | None = None,
    ) -> UUID:
        action_type = CrmSyncActionTypeEnum(action_type)
        _validate_transition(action_type, old_tier_id, new_tier_id)

        now = _utcnow()
        entry_id = uuid4()
        effective_old = old_tier_id
        queued_behind: UUID | None = None

        for existing in await self._store.list_open_entries(enrollment.id):
            if existing.status == CrmSyncStatusEnum.PENDING and self._can_supersede(existing, old_tier_id, new_tier_id):
                superseded = await self._store.transition_entry_status(
                    existing.id,
                    CrmSyncStatusEnum.PENDING,
                    CrmSyncStatusEnum.SUPERSEDED,
                    expected_attempts=existing.attempts,
                    superseded_by_id=entry_id,
                    completed_at=now,
                )
                if superseded:
                    if not existing.attempts:
                        # The CRM never saw the superseded change, so start from its origin.
                        effective_old = existing.old_tier_id
                    self._observability.record_superseded(existing.action_type.value)
                    logger.info(
                        "Superseded pending CRM sync entry",
                        entry_id=str(existing.id),
                        superseded_by=str(entry_id),
                        enrollment_id=str(enrollment.id),
                        attempts=existing.attempts,
                    )
                    continue
                logger.info(
                    "Pending CRM sync entry changed before it could be superseded",
                    entry_id=str(existing.id),
                    enrollment_id=str(enrollment.id),
                )
            queued_behind = existing.id

        if effective_old is None and new_tier_id is None:
            # Added and removed before the CRM saw either; the removal stays as a no-op safeguard.
            effective_old = old_tier_id
        effective_action = (
            action_type if effective_old == old_tier_id else _derive_action(effective_old, new_tier_id)
        )
        entry = CrmSyncQueueEntry(
            id=entry_id,
            action_type=effective_action,
            customer_crm_id=enrollment.customer_crm_id,
            enrollment_id=enrollment.id,
            old_tier_id=effective_old,
            new_tier_id=new_tier_id,
            status=CrmSyncStatusEnum.PENDING,
            attempts=0,
            max_attempts=self._max_attempts,
            next_retry_at=now,
        )
        await self._store.add_entry(entry)
        self._observability.record_enqueued(effective_action.value)
        logger.info(
            "Enqueued CRM sync entry",
            entry_id=str(entry_id),
            enrollment_id=str(enrollment.id),
            action_type=effective_action.value,
            old_tier_id=str(effective_old) if effective_old else None,
            new_tier_id=str(new_tier_id) if new_tier_id else None,
            queued_behind=str(queued_behind) if queued_behind else None,
        )
        return entry_id

    @staticmethod
    def _can_supersede(
        existing: CrmSyncQueueEntry, old_tier_id: UUID | None, new_tier_id: UUID | None
    ) -> bool:
        if not existing.attempts:
            return True
        # A partly applied entry may still hold promotions of its origin tier.
        return existing.old_tier_id in (None, old_tier_id, new_tier_id)


__all__ = ["CrmSyncQueueProducer"]
