"""Enrollment lifecycle; every transition enqueues exactly one CRM sync entry."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from loguru import logger

from clubsync_api.models.crm_sync import CrmSyncActionTypeEnum
from clubsync_api.models.membership import EnrollmentStatusEnum, MembershipEnrollment, MembershipTier
from clubsync_api.services.crm_sync.producer import CrmSyncQueueProducer

from .errors import EnrollmentError
from .store import MembershipStateStore

NOT_FOUND_CODES = frozenset({"enrollment_not_found", "tier_not_found"})
CONFLICT_CODES = frozenset({"already_enrolled", "enrollment_inactive"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping to the last day of shorter months."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


@dataclass(slots=True)
class EnrollmentChange:
    enrollment: MembershipEnrollment
    sync_entry_id: UUID


class EnrollmentService:
    """Create, move, cancel and expire customer memberships."""

    def __init__(self, store: MembershipStateStore, producer: CrmSyncQueueProducer | None = None) -> None:
        self._store = store
        self._producer = producer or CrmSyncQueueProducer(store)

    async def enroll(
        self,
        customer_crm_id: str,
        tier_id: UUID,
        *,
        enrolled_at: datetime | None = None,
    ) -> EnrollmentChange:
        tier = await self._require_tier(tier_id)
        if await self._store.get_active_enrollment(customer_crm_id) is not None:
            raise EnrollmentError("already_enrolled", f"Customer {customer_crm_id} already has an active membership")

        started = _as_utc(enrolled_at) if enrolled_at else _utcnow()
        enrollment = MembershipEnrollment(
            customer_crm_id=customer_crm_id,
            tier_id=tier.id,
            status=EnrollmentStatusEnum.ACTIVE,
            enrolled_at=started,
            expires_at=add_months(started, tier.duration_months),
        )
        try:
            await self._store.add_enrollment(enrollment)
            entry_id = await self._producer.enqueue_transition(
                enrollment, CrmSyncActionTypeEnum.ADD_TO_TIER, new_tier_id=tier.id
            )
            await self._store.commit()
        except Exception:
            await self._store.rollback()
            raise

        logger.info(
            "Customer enrolled",
            enrollment_id=str(enrollment.id),
            customer_crm_id=customer_crm_id,
            tier_id=str(tier.id),
        )
        return EnrollmentChange(enrollment=enrollment, sync_entry_id=entry_id)

    async def change_tier(self, enrollment_id: UUID, new_tier_id: UUID) -> EnrollmentChange:
        enrollment = await self._require_active(enrollment_id)
        if enrollment.tier_id == new_tier_id:
            raise EnrollmentError("same_tier", "Enrollment is already in the requested tier")
        tier = await self._require_tier(new_tier_id)

        old_tier_id = enrollment.tier_id
        now = _utcnow()
        enrollment.tier_id = tier.id
        enrollment.expires_at = add_months(now, tier.duration_months)
        try:
            entry_id = await self._producer.enqueue_transition(
                enrollment,
                CrmSyncActionTypeEnum.MOVE_TIER,
                old_tier_id=old_tier_id,
                new_tier_id=tier.id,
            )
            await self._store.commit()
        except Exception:
            await self._store.rollback()
            raise

        logger.info(
            "Enrollment moved to new tier",
            enrollment_id=str(enrollment.id),
            old_tier_id=str(old_tier_id),
            new_tier_id=str(tier.id),
        )
        return EnrollmentChange(enrollment=enrollment, sync_entry_id=entry_id)

    async def cancel(self, enrollment_id: UUID) -> EnrollmentChange:
        enrollment = await self._require_active(enrollment_id)
        enrollment.status = EnrollmentStatusEnum.CANCELLED
        enrollment.cancelled_at = _utcnow()
        try:
            entry_id = await self._producer.enqueue_transition(
                enrollment, CrmSyncActionTypeEnum.REMOVE_FROM_TIER, old_tier_id=enrollment.tier_id
            )
            await self._store.commit()
        except Exception:
            await self._store.rollback()
            raise

        logger.info("Enrollment cancelled", enrollment_id=str(enrollment.id))
        return EnrollmentChange(enrollment=enrollment, sync_entry_id=entry_id)

    async def expire_due(self, now: datetime | None = None, *, limit: int = 500) -> list[EnrollmentChange]:
        """Expire active enrollments whose ``expires_at`` has passed."""
        cutoff = _as_utc(now) if now else _utcnow()
        due = await self._store.list_expired_enrollments(cutoff, limit)
        changes: list[EnrollmentChange] = []
        try:
            for enrollment in due:
                enrollment.status = EnrollmentStatusEnum.EXPIRED
                entry_id = await self._producer.enqueue_transition(
                    enrollment, CrmSyncActionTypeEnum.REMOVE_FROM_TIER, old_tier_id=enrollment.tier_id
                )
                changes.append(EnrollmentChange(enrollment=enrollment, sync_entry_id=entry_id))
            await self._store.commit()
        except Exception:
            await self._store.rollback()
            raise

        if changes:
            logger.info("Expired enrollments", count=len(changes))
        return changes

    async def _require_tier(self, tier_id: UUID) -> MembershipTier:
        tier = await self._store.get_tier(tier_id)
        if tier is None:
            raise EnrollmentError("tier_not_found", f"Tier {tier_id} not found")
        if not tier.is_active:
            raise EnrollmentError("tier_inactive", f"Tier {tier_id} is not active")
        if not tier.is_complete:
            raise EnrollmentError("tier_incomplete", f"Tier {tier_id} has no CRM club or promotions yet")
        return tier

    async def _require_active(self, enrollment_id: UUID) -> MembershipEnrollment:
        enrollment = await self._store.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentError("enrollment_not_found", f"Enrollment {enrollment_id} not found")
        if enrollment.status != EnrollmentStatusEnum.ACTIVE:
            raise EnrollmentError(
                "enrollment_inactive",
                f"Enrollment {enrollment_id} is {EnrollmentStatusEnum(enrollment.status).value}",
            )
        return enrollment


__all__ = ["CONFLICT_CODES", "NOT_FOUND_CODES", "EnrollmentChange", "EnrollmentService", "add_months"]
