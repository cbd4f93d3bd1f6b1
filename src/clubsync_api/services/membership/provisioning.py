"""Tier provisioning saga: create CRM resources first, persist locally last."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence
from uuid import UUID

from loguru import logger

from clubsync_api.models.membership import MembershipTier
from clubsync_api.observability.provisioning import ProvisioningObservabilityStore, get_provisioning_store
from clubsync_api.observability.tracing import get_tracer
from clubsync_api.schemas.crm import CreateClubSpec, CreateLoyaltyTierSpec
from clubsync_api.schemas.membership import TierProvisionSpec
from clubsync_api.services.crm.client import CrmClient

from .errors import (
    ProgramNotFoundError,
    TierAlreadyProvisionedError,
    TierNotFoundError,
    TierPersistenceError,
    TierProvisioningError,
)
from .store import MembershipStateStore, ProvisionedLoyalty, ProvisionedPromotion

_tracer = get_tracer(__name__)


@dataclass(slots=True)
class TierProvisionResult:
    tier_id: UUID
    club_id: str
    promotion_ids: list[str]
    loyalty_tier_id: str | None = None
    tier: MembershipTier | None = None


@dataclass(slots=True)
class TierDeprovisionResult:
    tier_id: UUID
    deleted: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class TierProvisioningSaga:
    """Materializes a tier as club + promotions (+ loyalty tier) in the CRM.

    Remote resources are created in order and compensated in reverse order
    when a later step fails. Local rows are written only after every remote
    step succeeded, so a stored CRM id always points at an existing resource.
    """

    def __init__(
        self,
        crm_client: CrmClient,
        store: MembershipStateStore,
        *,
        observability: ProvisioningObservabilityStore | None = None,
    ) -> None:
        self._crm = crm_client
        self._store = store
        self._observability = observability or get_provisioning_store()

    async def provision_tier(self, spec: TierProvisionSpec, *, tier_id: UUID | None = None) -> TierProvisionResult:
        """Provision ``spec`` as a new tier, or complete the existing incomplete tier ``tier_id``."""

        with _tracer.start_as_current_span("membership.provision_tier") as span:
            span.set_attribute("tier.name", spec.name)
            span.set_attribute("tier.promotion_count", len(spec.promotions))
            await self._ensure_provisionable(spec, tier_id)

            step = "create_club"
            club_id: str | None = None
            promotions: list[ProvisionedPromotion] = []
            loyalty: ProvisionedLoyalty | None = None
            try:
                club_id = await self._crm.create_club(CreateClubSpec.for_tier(spec.name, spec.description))
                logger.info("Created CRM club", tier_name=spec.name, club_id=club_id)

                for index, promotion_spec in enumerate(spec.promotions):
                    step = f"create_promotion[{index}]"
                    promotion_id = await self._crm.create_promotion(club_id, promotion_spec)
                    promotions.append(
                        ProvisionedPromotion(crm_promotion_id=promotion_id, title=promotion_spec.title, position=index)
                    )

                if spec.loyalty is not None:
                    step = "create_loyalty_tier"
                    loyalty_spec = CreateLoyaltyTierSpec(
                        title=f"{spec.name} Loyalty",
                        earn_rate=spec.loyalty.earn_rate,
                        sort_order=spec.tier_order or 0,
                    )
                    loyalty_tier_id = await self._crm.create_loyalty_tier(club_id, loyalty_spec)
                    loyalty = ProvisionedLoyalty(
                        crm_loyalty_tier_id=loyalty_tier_id,
                        tier_title=loyalty_spec.title,
                        earn_rate=spec.loyalty.earn_rate,
                        initial_points_bonus=spec.loyalty.initial_points_bonus,
                    )
            except Exception as exc:
                compensated, failures = await self._compensate(
                    club_id, [promotion.crm_promotion_id for promotion in promotions]
                )
                self._observability.record_rolled_back(step, failures)
                span.set_attribute("provisioning.failed_step", step)
                span.record_exception(exc)
                logger.warning(
                    "Tier provisioning rolled back",
                    tier_name=spec.name,
                    failed_step=step,
                    error=str(exc),
                    compensated=compensated,
                    compensation_failures=failures,
                )
                raise TierProvisioningError(
                    exc,
                    failed_step=step,
                    compensation_failures=failures,
                    compensated=compensated,
                ) from exc

            promotion_ids = [promotion.crm_promotion_id for promotion in promotions]
            try:
                tier = await self._store.save_provisioned_tier(
                    spec,
                    tier_id=tier_id,
                    club_id=club_id,
                    promotions=promotions,
                    loyalty=loyalty,
                )
            except Exception as exc:
                self._observability.record_persistence_failure()
                span.record_exception(exc)
                logger.error(
                    "CRM resources created but tier could not be persisted; manual reconciliation required",
                    tier_name=spec.name,
                    club_id=club_id,
                    promotion_ids=promotion_ids,
                    loyalty_tier_id=loyalty.crm_loyalty_tier_id if loyalty else None,
                    error=str(exc),
                )
                raise TierPersistenceError(
                    exc,
                    club_id=club_id,
                    promotion_ids=promotion_ids,
                    loyalty_tier_id=loyalty.crm_loyalty_tier_id if loyalty else None,
                ) from exc

            self._observability.record_provisioned()
            logger.info(
                "Provisioned membership tier",
                tier_id=str(tier.id),
                club_id=club_id,
                promotion_count=len(promotion_ids),
                has_loyalty=loyalty is not None,
            )
            return TierProvisionResult(
                tier_id=tier.id,
                club_id=club_id,
                promotion_ids=promotion_ids,
                loyalty_tier_id=loyalty.crm_loyalty_tier_id if loyalty else None,
                tier=tier,
            )

    async def deprovision_tier(self, tier_id: UUID) -> TierDeprovisionResult:
        """Delete the tier's loyalty tier, promotions and club, then the local rows."""

        with _tracer.start_as_current_span("membership.deprovision_tier") as span:
            span.set_attribute("tier.id", str(tier_id))
            tier = await self._store.get_tier(tier_id)
            if tier is None:
                raise TierNotFoundError(tier_id)

            result = TierDeprovisionResult(tier_id=tier_id)
            loyalty_config = tier.loyalty_config
            if loyalty_config is not None:
                await self._attempt_delete(
                    "loyalty_tier", loyalty_config.crm_loyalty_tier_id, self._crm.delete_loyalty_tier, result
                )
            for promotion in tier.promotions:
                await self._attempt_delete("promotion", promotion.crm_promotion_id, self._crm.delete_promotion, result)
            if tier.crm_club_id:
                await self._attempt_delete("club", tier.crm_club_id, self._crm.delete_club, result)

            await self._store.delete_tier(tier_id)
            self._observability.record_deprovisioned(result.warnings)
            logger.info(
                "Deprovisioned membership tier",
                tier_id=str(tier_id),
                deleted=result.deleted,
                warnings=result.warnings,
            )
            return result

    async def _ensure_provisionable(self, spec: TierProvisionSpec, tier_id: UUID | None) -> None:
        if tier_id is not None:
            tier = await self._store.get_tier(tier_id)
            if tier is None:
                raise TierNotFoundError(tier_id)
            if tier.crm_club_id:
                raise TierAlreadyProvisionedError(tier_id, tier.crm_club_id)
            return
        program = await self._store.get_program(spec.program_id)
        if program is None:
            raise ProgramNotFoundError(spec.program_id)

    async def _compensate(
        self, club_id: str | None, promotion_ids: Sequence[str]
    ) -> tuple[list[str], list[str]]:
        compensated: list[str] = []
        failures: list[str] = []
        for promotion_id in reversed(promotion_ids):
            try:
                await self._crm.delete_promotion(promotion_id)
                compensated.append(promotion_id)
            except Exception as exc:
                failures.append(f"delete_promotion {promotion_id}: {exc}")
        if club_id is not None:
            try:
                await self._crm.delete_club(club_id)
                compensated.append(club_id)
            except Exception as exc:
                failures.append(f"delete_club {club_id}: {exc}")
        return compensated, failures

    @staticmethod
    async def _attempt_delete(kind, resource_id, delete, result: TierDeprovisionResult) -> None:
        try:
            await delete(resource_id)
        except Exception as exc:
            logger.warning("CRM delete failed during deprovision", resource=kind, resource_id=resource_id, error=str(exc))
            result.warnings.append(f"delete_{kind} {resource_id}: {exc}")
        else:
            result.deleted.append(resource_id)


__all__ = ["TierDeprovisionResult", "TierProvisionResult", "TierProvisioningSaga"]
