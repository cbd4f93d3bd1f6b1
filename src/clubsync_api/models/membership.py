"""Membership program, tier and enrollment models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from clubsync_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class EnrollmentStatusEnum(str, Enum):
    """Lifecycle of a customer's membership in a tier."""

    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ClubProgram(Base):
    """Organizational container for tiers; has no CRM counterpart."""

    __tablename__ = "club_programs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    tiers = relationship("MembershipTier", back_populates="program", cascade="all, delete-orphan")


class MembershipTier(Base):
    """A membership level whose benefits live in the CRM as a club + promotions."""

    __tablename__ = "membership_tiers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    program_id = Column(UUID(as_uuid=True), ForeignKey("club_programs.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    duration_months = Column(Integer, nullable=False)
    min_purchase_amount = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    tier_order = Column(Integer, nullable=True)
    # Immutable once set; cleared only by deleting the tier.
    crm_club_id = Column(String(255), nullable=True, unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    program = relationship("ClubProgram", back_populates="tiers")
    promotions = relationship(
        "TierPromotion",
        back_populates="tier",
        cascade="all, delete-orphan",
        order_by="TierPromotion.position",
    )
    loyalty_config = relationship(
        "TierLoyaltyConfig",
        back_populates="tier",
        cascade="all, delete-orphan",
        uselist=False,
    )

    @property
    def is_complete(self) -> bool:
        """A tier is usable once its club and at least one promotion exist."""
        return bool(self.crm_club_id) and bool(self.promotions)


class TierPromotion(Base):
    """Discount rule materialized in the CRM for a tier."""

    __tablename__ = "tier_promotions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tier_id = Column(UUID(as_uuid=True), ForeignKey("membership_tiers.id", ondelete="CASCADE"), nullable=False, index=True)
    crm_promotion_id = Column(String(255), nullable=False, unique=True)
    title = Column(String(255), nullable=True)  # display cache, may be stale
    position = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    tier = relationship("MembershipTier", back_populates="promotions")


class TierLoyaltyConfig(Base):
    """Optional loyalty accrual rule bound to one CRM loyalty tier."""

    __tablename__ = "tier_loyalty_configs"
    __table_args__ = (
        UniqueConstraint("tier_id", name="uq_tier_loyalty_configs_tier_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tier_id = Column(UUID(as_uuid=True), ForeignKey("membership_tiers.id", ondelete="CASCADE"), nullable=False)
    crm_loyalty_tier_id = Column(String(255), nullable=False, unique=True)
    tier_title = Column(String(255), nullable=True)
    earn_rate = Column(Numeric(5, 4), nullable=False)  # 0.02 == 2% points per currency unit
    initial_points_bonus = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    tier = relationship("MembershipTier", back_populates="loyalty_config")


class MembershipEnrollment(Base):
    """A customer's membership in exactly one tier at a time."""

    __tablename__ = "membership_enrollments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_crm_id = Column(String(255), nullable=False, index=True)
    tier_id = Column(UUID(as_uuid=True), ForeignKey("membership_tiers.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(
        SqlEnum(EnrollmentStatusEnum, name="enrollment_status_enum", values_callable=_enum_values),
        nullable=False,
        default=EnrollmentStatusEnum.ACTIVE,
        server_default=EnrollmentStatusEnum.ACTIVE.value,
    )
    enrolled_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    tier = relationship("MembershipTier")
