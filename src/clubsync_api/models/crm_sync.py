"""Durable queue of customer membership changes awaiting CRM reconciliation."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from clubsync_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class CrmSyncActionTypeEnum(str, Enum):
    """CRM operation implied by an enrollment transition."""

    ADD_TO_TIER = "add_to_tier"
    REMOVE_FROM_TIER = "remove_from_tier"
    MOVE_TIER = "move_tier"


class CrmSyncStatusEnum(str, Enum):
    """Queue entry lifecycle; completed, failed and superseded are terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SUPERSEDED = "superseded"


OPEN_SYNC_STATUSES = (CrmSyncStatusEnum.PENDING, CrmSyncStatusEnum.PROCESSING)
TERMINAL_SYNC_STATUSES = (
    CrmSyncStatusEnum.COMPLETED,
    CrmSyncStatusEnum.FAILED,
    CrmSyncStatusEnum.SUPERSEDED,
)


class CrmSyncQueueEntry(Base):
    """One unit of reconciliation work for a single enrollment transition."""

    __tablename__ = "crm_sync_queue"
    __table_args__ = (
        Index("ix_crm_sync_queue_status_next_retry", "status", "next_retry_at"),
        Index("ix_crm_sync_queue_enrollment_created", "enrollment_id", "created_at"),
        Index("ix_crm_sync_queue_customer_created", "customer_crm_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    action_type = Column(
        SqlEnum(CrmSyncActionTypeEnum, name="crm_sync_action_type_enum", values_callable=_enum_values),
        nullable=False,
    )
    customer_crm_id = Column(String(255), nullable=False)
    enrollment_id = Column(
        UUID(as_uuid=True),
        ForeignKey("membership_enrollments.id", ondelete="CASCADE"),
        nullable=False,
    )
    old_tier_id = Column(UUID(as_uuid=True), ForeignKey("membership_tiers.id", ondelete="SET NULL"), nullable=True)
    new_tier_id = Column(UUID(as_uuid=True), ForeignKey("membership_tiers.id", ondelete="SET NULL"), nullable=True)
    status = Column(
        SqlEnum(CrmSyncStatusEnum, name="crm_sync_status_enum", values_callable=_enum_values),
        nullable=False,
        default=CrmSyncStatusEnum.PENDING,
        server_default=CrmSyncStatusEnum.PENDING.value,
    )
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    max_attempts = Column(Integer, nullable=False, default=5, server_default="5")
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    superseded_by_id = Column(UUID(as_uuid=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    # Python-side timestamps keep sub-second ordering for entries of one customer.
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    enrollment = relationship("MembershipEnrollment")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_SYNC_STATUSES
