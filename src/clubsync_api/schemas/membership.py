from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from clubsync_api.schemas.crm import CreatePromotionSpec, _to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=_to_camel)


class LoyaltySpec(_CamelModel):
    """Optional per-tier loyalty accrual."""

    earn_rate: float = Field(..., gt=0, le=1, description="0.02 earns 2% of spend in points")
    initial_points_bonus: int = Field(default=0, ge=0)


class TierProvisionSpec(_CamelModel):
    """Everything needed to materialize one tier in the CRM."""

    program_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    duration_months: int = Field(..., ge=1, le=120)
    min_purchase_amount: Decimal = Field(default=Decimal("0"), ge=0)
    tier_order: int | None = Field(default=None, ge=0)
    promotions: list[CreatePromotionSpec] = Field(default_factory=list)
    loyalty: LoyaltySpec | None = None


class ProgramCreateRequest(_CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)


class ProgramResponse(_CamelModel):
    id: UUID
    name: str
    description: str | None
    is_active: bool


class PromotionResponse(_CamelModel):
    id: UUID
    crm_promotion_id: str
    title: str | None
    position: int
    is_active: bool


class LoyaltyConfigResponse(_CamelModel):
    id: UUID
    crm_loyalty_tier_id: str
    tier_title: str | None
    earn_rate: float
    initial_points_bonus: int


class TierResponse(_CamelModel):
    id: UUID
    program_id: UUID
    name: str
    description: str | None
    duration_months: int
    min_purchase_amount: float
    tier_order: int | None
    crm_club_id: str | None
    is_active: bool
    is_complete: bool
    promotions: list[PromotionResponse] = Field(default_factory=list)
    loyalty: LoyaltyConfigResponse | None = None


class TierProvisionResponse(_CamelModel):
    tier_id: UUID
    club_id: str
    promotion_ids: list[str]
    loyalty_tier_id: str | None = None


class TierDeprovisionResponse(_CamelModel):
    tier_id: UUID
    deleted: list[str]
    warnings: list[str]


class EnrollmentCreateRequest(_CamelModel):
    customer_crm_id: str = Field(..., min_length=1, max_length=255)
    tier_id: UUID
    enrolled_at: datetime | None = None


class EnrollmentTierChangeRequest(_CamelModel):
    tier_id: UUID


class EnrollmentResponse(_CamelModel):
    id: UUID
    customer_crm_id: str
    tier_id: UUID
    status: Literal["active", "expired", "cancelled"]
    enrolled_at: datetime
    expires_at: datetime
    cancelled_at: datetime | None = None
    sync_entry_id: UUID | None = None
