"""Capability interface every CRM backend implements."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from clubsync_api.schemas.crm import CreateClubSpec, CreateLoyaltyTierSpec, CreatePromotionSpec


@runtime_checkable
class CrmClient(Protocol):
    """Minimal protocol for managing clubs, promotions and loyalty tiers remotely.

    Deletes and customer removals are idempotent: a resource that is already
    gone counts as success.
    """

    async def create_club(self, spec: CreateClubSpec) -> str:
        ...

    async def delete_club(self, club_id: str) -> None:
        ...

    async def create_promotion(self, club_id: str, spec: CreatePromotionSpec) -> str:
        ...

    async def delete_promotion(self, promotion_id: str) -> None:
        ...

    async def create_loyalty_tier(self, club_id: str, spec: CreateLoyaltyTierSpec) -> str:
        ...

    async def delete_loyalty_tier(self, loyalty_tier_id: str) -> None:
        ...

    async def add_customer_to_promotion(self, customer_id: str, promotion_id: str) -> None:
        ...

    async def remove_customer_from_promotion(self, customer_id: str, promotion_id: str) -> None:
        ...


__all__ = ["CrmClient"]
