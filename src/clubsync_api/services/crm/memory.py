"""In-process CRM used for local development and tests."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from clubsync_api.schemas.crm import CreateClubSpec, CreateLoyaltyTierSpec, CreatePromotionSpec

from .errors import CrmNotFoundError, CrmTransientError


@dataclass(slots=True)
class _InjectedFailure:
    error: BaseException
    remaining: int | None
    skip: int = 0


@dataclass(slots=True)
class InMemoryPromotion:
    id: str
    club_id: str
    spec: CreatePromotionSpec
    customers: set[str] = field(default_factory=set)


class InMemoryCrmClient:
    """Dictionary-backed CRM with failure injection.

    Every call is appended to ``calls`` as ``(operation, *args)`` so tests can
    assert on exact call order, including compensation deletes.
    """

    def __init__(self) -> None:
        self.clubs: dict[str, CreateClubSpec] = {}
        self.promotions: dict[str, InMemoryPromotion] = {}
        self.loyalty_tiers: dict[str, tuple[str, CreateLoyaltyTierSpec]] = {}
        self.calls: list[tuple[Any, ...]] = []
        self._failures: dict[str, list[_InjectedFailure]] = {}
        self._sequence = itertools.count(1)

    def inject_failure(
        self,
        operation: str,
        error: BaseException | None = None,
        *,
        times: int | None = 1,
        skip: int = 0,
    ) -> None:
        """Make ``operation`` raise after ``skip`` successful calls, ``times`` times (``None`` = forever)."""

        failure = _InjectedFailure(
            error=error or CrmTransientError(f"injected {operation} failure", operation=operation),
            remaining=times,
            skip=skip,
        )
        self._failures.setdefault(operation, []).append(failure)

    def clear_failures(self) -> None:
        self._failures.clear()

    def members_of(self, promotion_id: str) -> set[str]:
        promotion = self.promotions.get(promotion_id)
        return set(promotion.customers) if promotion else set()

    def promotions_for_customer(self, customer_id: str) -> list[str]:
        return [promotion.id for promotion in self.promotions.values() if customer_id in promotion.customers]

    def list_promotions(self, club_id: str) -> list[InMemoryPromotion]:
        return [promotion for promotion in self.promotions.values() if promotion.club_id == club_id]

    def get_club(self, club_id: str) -> CreateClubSpec | None:
        return self.clubs.get(club_id)

    async def create_club(self, spec: CreateClubSpec) -> str:
        self._record("create_club", spec.title)
        club_id = self._next_id("club")
        self.clubs[club_id] = spec
        return club_id

    async def delete_club(self, club_id: str) -> None:
        self._record("delete_club", club_id)
        self.clubs.pop(club_id, None)

    async def create_promotion(self, club_id: str, spec: CreatePromotionSpec) -> str:
        self._record("create_promotion", club_id, spec.title)
        if club_id not in self.clubs:
            raise CrmNotFoundError(f"club {club_id} not found", status_code=404, operation="create_promotion")
        promotion_id = self._next_id("promo")
        self.promotions[promotion_id] = InMemoryPromotion(id=promotion_id, club_id=club_id, spec=spec)
        return promotion_id

    async def delete_promotion(self, promotion_id: str) -> None:
        self._record("delete_promotion", promotion_id)
        self.promotions.pop(promotion_id, None)

    async def create_loyalty_tier(self, club_id: str, spec: CreateLoyaltyTierSpec) -> str:
        self._record("create_loyalty_tier", club_id, spec.title)
        if club_id not in self.clubs:
            raise CrmNotFoundError(f"club {club_id} not found", status_code=404, operation="create_loyalty_tier")
        loyalty_id = self._next_id("loyalty")
        self.loyalty_tiers[loyalty_id] = (club_id, spec)
        return loyalty_id

    async def delete_loyalty_tier(self, loyalty_tier_id: str) -> None:
        self._record("delete_loyalty_tier", loyalty_tier_id)
        self.loyalty_tiers.pop(loyalty_tier_id, None)

    async def add_customer_to_promotion(self, customer_id: str, promotion_id: str) -> None:
        self._record("add_customer_to_promotion", customer_id, promotion_id)
        promotion = self.promotions.get(promotion_id)
        if promotion is None:
            raise CrmNotFoundError(
                f"promotion {promotion_id} not found",
                status_code=404,
                operation="add_customer_to_promotion",
            )
        promotion.customers.add(customer_id)

    async def remove_customer_from_promotion(self, customer_id: str, promotion_id: str) -> None:
        self._record("remove_customer_from_promotion", customer_id, promotion_id)
        promotion = self.promotions.get(promotion_id)
        if promotion is not None:
            promotion.customers.discard(customer_id)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._sequence)}"

    def _record(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, *args))
        for failure in self._failures.get(operation, []):
            if failure.remaining == 0:
                continue
            if failure.skip > 0:
                failure.skip -= 1
                continue
            if failure.remaining is not None:
                failure.remaining -= 1
            logger.debug("Raising injected CRM failure", operation=operation)
            raise failure.error


__all__ = ["InMemoryCrmClient", "InMemoryPromotion"]
