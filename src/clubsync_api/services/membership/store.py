"""Persistence capability shared by the provisioning saga, producer and processor."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence
from uuid import UUID

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, selectinload

from clubsync_api.models.crm_sync import OPEN_SYNC_STATUSES, CrmSyncQueueEntry, CrmSyncStatusEnum
from clubsync_api.models.membership import (
    ClubProgram,
    EnrollmentStatusEnum,
    MembershipEnrollment,
    MembershipTier,
    TierLoyaltyConfig,
    TierPromotion,
)
from clubsync_api.schemas.membership import TierProvisionSpec

from .errors import TierAlreadyProvisionedError, TierNotFoundError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class ProvisionedPromotion:
    crm_promotion_id: str
    title: str | None
    position: int


@dataclass(slots=True, frozen=True)
class ProvisionedLoyalty:
    crm_loyalty_tier_id: str
    tier_title: str | None
    earn_rate: float
    initial_points_bonus: int


class MembershipStateStore(Protocol):
    """Record reads/writes plus the conditional queue status transition."""

    async def get_program(self, program_id: UUID) -> ClubProgram | None:
        ...

    async def get_tier(self, tier_id: UUID) -> MembershipTier | None:
        ...

    async def save_provisioned_tier(
        self,
        spec: TierProvisionSpec,
        *,
        tier_id: UUID | None,
        club_id: str,
        promotions: Sequence[ProvisionedPromotion],
        loyalty: ProvisionedLoyalty | None,
    ) -> MembershipTier:
        ...

    async def delete_tier(self, tier_id: UUID) -> None:
        ...

    async def list_active_promotion_ids(self, tier_id: UUID | None) -> list[str] | None:
        ...

    async def get_enrollment(self, enrollment_id: UUID) -> MembershipEnrollment | None:
        ...

    async def get_active_enrollment(self, customer_crm_id: str) -> MembershipEnrollment | None:
        ...

    async def add_enrollment(self, enrollment: MembershipEnrollment) -> MembershipEnrollment:
        ...

    async def list_expired_enrollments(self, now: datetime, limit: int) -> list[MembershipEnrollment]:
        ...

    async def list_open_entries(self, enrollment_id: UUID) -> list[CrmSyncQueueEntry]:
        ...

    async def add_entry(self, entry: CrmSyncQueueEntry) -> CrmSyncQueueEntry:
        ...

    async def get_entry(self, entry_id: UUID) -> CrmSyncQueueEntry | None:
        ...

    async def list_entries(
        self, *, status: CrmSyncStatusEnum | None = None, limit: int = 100
    ) -> list[CrmSyncQueueEntry]:
        ...

    async def select_due_entries(self, now: datetime, limit: int) -> list[CrmSyncQueueEntry]:
        ...

    async def claim_entry(self, entry_id: UUID, now: datetime) -> bool:
        ...

    async def transition_entry_status(
        self,
        entry_id: UUID,
        from_status: CrmSyncStatusEnum,
        to_status: CrmSyncStatusEnum,
        *,
        expected_attempts: int | None = None,
        **values: Any,
    ) -> bool:
        ...

    async def has_later_entries(self, entry: CrmSyncQueueEntry) -> bool:
        ...

    async def list_stale_claims(self, claimed_before: datetime, limit: int) -> list[CrmSyncQueueEntry]:
        ...

    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...


class SqlAlchemyStateStore:
    """``MembershipStateStore`` backed by an ``AsyncSession``.

    Queue mutations flush but never commit; callers own the transaction
    boundary. ``save_provisioned_tier`` and ``delete_tier`` are the exception
    because the saga treats local persistence as one atomic step.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def get_program(self, program_id: UUID) -> ClubProgram | None:
        return await self._session.get(ClubProgram, program_id)

    async def get_tier(self, tier_id: UUID) -> MembershipTier | None:
        stmt = (
            select(MembershipTier)
            .options(selectinload(MembershipTier.promotions), selectinload(MembershipTier.loyalty_config))
            .where(MembershipTier.id == tier_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def save_provisioned_tier(
        self,
        spec: TierProvisionSpec,
        *,
        tier_id: UUID | None,
        club_id: str,
        promotions: Sequence[ProvisionedPromotion],
        loyalty: ProvisionedLoyalty | None,
    ) -> MembershipTier:
        try:
            if tier_id is None:
                tier = MembershipTier(
                    program_id=spec.program_id,
                    name=spec.name,
                    description=spec.description,
                    duration_months=spec.duration_months,
                    min_purchase_amount=spec.min_purchase_amount,
                    tier_order=spec.tier_order,
                    promotions=[],
                )
                self._session.add(tier)
            else:
                tier = await self.get_tier(tier_id)
                if tier is None:
                    raise TierNotFoundError(tier_id)
                if tier.crm_club_id:
                    raise TierAlreadyProvisionedError(tier_id, tier.crm_club_id)

            tier.crm_club_id = club_id
            offset = len(tier.promotions)
            for promotion in promotions:
                tier.promotions.append(
                    TierPromotion(
                        crm_promotion_id=promotion.crm_promotion_id,
                        title=promotion.title,
                        position=offset + promotion.position,
                    )
                )
            if loyalty is not None:
                config = tier.loyalty_config
                if config is None:
                    tier.loyalty_config = TierLoyaltyConfig(
                        crm_loyalty_tier_id=loyalty.crm_loyalty_tier_id,
                        tier_title=loyalty.tier_title,
                        earn_rate=loyalty.earn_rate,
                        initial_points_bonus=loyalty.initial_points_bonus,
                    )
                else:
                    config.crm_loyalty_tier_id = loyalty.crm_loyalty_tier_id
                    config.tier_title = loyalty.tier_title
                    config.earn_rate = loyalty.earn_rate
                    config.initial_points_bonus = loyalty.initial_points_bonus
                    config.is_active = True

            await self._session.flush()
            saved_id = tier.id
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

        saved = await self.get_tier(saved_id)
        assert saved is not None
        return saved

    async def delete_tier(self, tier_id: UUID) -> None:
        tier = await self.get_tier(tier_id)
        if tier is None:
            return
        try:
            await self._session.delete(tier)
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

    async def list_active_promotion_ids(self, tier_id: UUID | None) -> list[str] | None:
        """Return the tier's active CRM promotion ids, or ``None`` when the tier no longer exists."""

        if tier_id is None:
            return None
        tier_exists = await self._session.scalar(select(MembershipTier.id).where(MembershipTier.id == tier_id))
        if tier_exists is None:
            return None
        stmt = (
            select(TierPromotion.crm_promotion_id)
            .where(TierPromotion.tier_id == tier_id, TierPromotion.is_active.is_(True))
            .order_by(TierPromotion.position.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def get_enrollment(self, enrollment_id: UUID) -> MembershipEnrollment | None:
        return await self._session.get(MembershipEnrollment, enrollment_id, populate_existing=True)

    async def get_active_enrollment(self, customer_crm_id: str) -> MembershipEnrollment | None:
        stmt = (
            select(MembershipEnrollment)
            .where(
                MembershipEnrollment.customer_crm_id == customer_crm_id,
                MembershipEnrollment.status == EnrollmentStatusEnum.ACTIVE,
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_enrollment(self, enrollment: MembershipEnrollment) -> MembershipEnrollment:
        self._session.add(enrollment)
        await self._session.flush()
        return enrollment

    async def list_expired_enrollments(self, now: datetime, limit: int) -> list[MembershipEnrollment]:
        stmt = (
            select(MembershipEnrollment)
            .where(
                MembershipEnrollment.status == EnrollmentStatusEnum.ACTIVE,
                MembershipEnrollment.expires_at <= now,
            )
            .order_by(MembershipEnrollment.expires_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def list_open_entries(self, enrollment_id: UUID) -> list[CrmSyncQueueEntry]:
        stmt = (
            select(CrmSyncQueueEntry)
            .where(
                CrmSyncQueueEntry.enrollment_id == enrollment_id,
                CrmSyncQueueEntry.status.in_(OPEN_SYNC_STATUSES),
            )
            .order_by(CrmSyncQueueEntry.created_at.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def add_entry(self, entry: CrmSyncQueueEntry) -> CrmSyncQueueEntry:
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def get_entry(self, entry_id: UUID) -> CrmSyncQueueEntry | None:
        return await self._session.get(CrmSyncQueueEntry, entry_id, populate_existing=True)

    async def list_entries(
        self, *, status: CrmSyncStatusEnum | None = None, limit: int = 100
    ) -> list[CrmSyncQueueEntry]:
        stmt = select(CrmSyncQueueEntry).order_by(CrmSyncQueueEntry.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(CrmSyncQueueEntry.status == status)
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def select_due_entries(self, now: datetime, limit: int) -> list[CrmSyncQueueEntry]:
        """Pending entries that are due and not queued behind an older open entry.

        Ordering is per customer, not per enrollment: a cancelled enrollment's
        removal must land before a re-enrollment's addition to the same tier.
        """

        older = aliased(CrmSyncQueueEntry)
        blocked = exists(
            select(older.id).where(
                older.customer_crm_id == CrmSyncQueueEntry.customer_crm_id,
                older.status.in_(OPEN_SYNC_STATUSES),
                older.created_at < CrmSyncQueueEntry.created_at,
            )
        )
        stmt = (
            select(CrmSyncQueueEntry)
            .where(
                CrmSyncQueueEntry.status == CrmSyncStatusEnum.PENDING,
                or_(CrmSyncQueueEntry.next_retry_at.is_(None), CrmSyncQueueEntry.next_retry_at <= now),
                ~blocked,
            )
            .order_by(CrmSyncQueueEntry.enrollment_id.asc(), CrmSyncQueueEntry.created_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def claim_entry(self, entry_id: UUID, now: datetime) -> bool:
        """Atomically move a pending entry to processing and count the attempt."""

        stmt = (
            update(CrmSyncQueueEntry)
            .where(
                and_(
                    CrmSyncQueueEntry.id == entry_id,
                    CrmSyncQueueEntry.status == CrmSyncStatusEnum.PENDING,
                )
            )
            .values(
                status=CrmSyncStatusEnum.PROCESSING,
                attempts=CrmSyncQueueEntry.attempts + 1,
                last_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def transition_entry_status(
        self,
        entry_id: UUID,
        from_status: CrmSyncStatusEnum,
        to_status: CrmSyncStatusEnum,
        *,
        expected_attempts: int | None = None,
        **values: Any,
    ) -> bool:
        """Set ``to_status`` (plus ``values``) only if the entry is still in ``from_status``.

        ``expected_attempts`` additionally requires the attempt count seen by the caller.
        """

        values.setdefault("updated_at", _utcnow())
        conditions = [CrmSyncQueueEntry.id == entry_id, CrmSyncQueueEntry.status == from_status]
        if expected_attempts is not None:
            conditions.append(CrmSyncQueueEntry.attempts == expected_attempts)
        stmt = (
            update(CrmSyncQueueEntry)
            .where(*conditions)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def has_later_entries(self, entry: CrmSyncQueueEntry) -> bool:
        """Whether a newer, non-superseded entry exists for the entry's customer."""

        stmt = select(
            exists().where(
                CrmSyncQueueEntry.customer_crm_id == entry.customer_crm_id,
                CrmSyncQueueEntry.created_at > entry.created_at,
                CrmSyncQueueEntry.status != CrmSyncStatusEnum.SUPERSEDED,
            )
        )
        return bool(await self._session.scalar(stmt))

    async def list_stale_claims(self, claimed_before: datetime, limit: int) -> list[CrmSyncQueueEntry]:
        stmt = (
            select(CrmSyncQueueEntry)
            .where(
                CrmSyncQueueEntry.status == CrmSyncStatusEnum.PROCESSING,
                CrmSyncQueueEntry.last_attempt_at <= claimed_before,
            )
            .order_by(CrmSyncQueueEntry.last_attempt_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


__all__ = [
    "MembershipStateStore",
    "ProvisionedLoyalty",
    "ProvisionedPromotion",
    "SqlAlchemyStateStore",
]
