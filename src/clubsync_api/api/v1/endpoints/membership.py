"""Membership program, tier provisioning and enrollment endpoints."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from clubsync_api.api.dependencies.crm import get_crm_client, get_state_store
from clubsync_api.models.membership import ClubProgram, EnrollmentStatusEnum, MembershipEnrollment, MembershipTier
from clubsync_api.schemas.membership import (
    EnrollmentCreateRequest,
    EnrollmentResponse,
    EnrollmentTierChangeRequest,
    LoyaltyConfigResponse,
    ProgramCreateRequest,
    ProgramResponse,
    PromotionResponse,
    TierDeprovisionResponse,
    TierProvisionResponse,
    TierProvisionSpec,
    TierResponse,
)
from clubsync_api.services.crm import CrmClient
from clubsync_api.services.membership import (
    EnrollmentError,
    EnrollmentService,
    ProgramNotFoundError,
    SqlAlchemyStateStore,
    TierAlreadyProvisionedError,
    TierNotFoundError,
    TierPersistenceError,
    TierProvisioningError,
    TierProvisioningSaga,
)
from clubsync_api.services.membership.enrollments import CONFLICT_CODES, NOT_FOUND_CODES, EnrollmentChange

router = APIRouter(prefix="/membership", tags=["Membership"])


def _serialize_tier(tier: MembershipTier) -> TierResponse:
    loyalty = tier.loyalty_config
    return TierResponse(
        id=tier.id,
        program_id=tier.program_id,
        name=tier.name,
        description=tier.description,
        duration_months=tier.duration_months,
        min_purchase_amount=float(tier.min_purchase_amount or 0),
        tier_order=tier.tier_order,
        crm_club_id=tier.crm_club_id,
        is_active=bool(tier.is_active),
        is_complete=tier.is_complete,
        promotions=[
            PromotionResponse(
                id=promotion.id,
                crm_promotion_id=promotion.crm_promotion_id,
                title=promotion.title,
                position=promotion.position,
                is_active=bool(promotion.is_active),
            )
            for promotion in tier.promotions
        ],
        loyalty=(
            LoyaltyConfigResponse(
                id=loyalty.id,
                crm_loyalty_tier_id=loyalty.crm_loyalty_tier_id,
                tier_title=loyalty.tier_title,
                earn_rate=float(loyalty.earn_rate),
                initial_points_bonus=loyalty.initial_points_bonus,
            )
            if loyalty is not None
            else None
        ),
    )


def _serialize_enrollment(enrollment: MembershipEnrollment, sync_entry_id: UUID | None = None) -> EnrollmentResponse:
    return EnrollmentResponse(
        id=enrollment.id,
        customer_crm_id=enrollment.customer_crm_id,
        tier_id=enrollment.tier_id,
        status=EnrollmentStatusEnum(enrollment.status).value,
        enrolled_at=enrollment.enrolled_at,
        expires_at=enrollment.expires_at,
        cancelled_at=enrollment.cancelled_at,
        sync_entry_id=sync_entry_id,
    )


def _enrollment_http_error(error: EnrollmentError) -> HTTPException:
    if error.code in NOT_FOUND_CODES:
        code = status.HTTP_404_NOT_FOUND
    elif error.code in CONFLICT_CODES:
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail={"code": error.code, "message": error.message})


def _change_response(change: EnrollmentChange) -> EnrollmentResponse:
    return _serialize_enrollment(change.enrollment, change.sync_entry_id)


@router.post("/programs", response_model=ProgramResponse, status_code=status.HTTP_201_CREATED)
async def create_program(
    payload: ProgramCreateRequest,
    store: SqlAlchemyStateStore = Depends(get_state_store),
) -> ProgramResponse:
    program = ClubProgram(name=payload.name, description=payload.description, is_active=True)
    store.session.add(program)
    await store.commit()
    return ProgramResponse(id=program.id, name=program.name, description=program.description, is_active=True)


@router.get("/tiers/{tier_id}", response_model=TierResponse)
async def get_tier(tier_id: UUID, store: SqlAlchemyStateStore = Depends(get_state_store)) -> TierResponse:
    tier = await store.get_tier(tier_id)
    if tier is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tier not found")
    return _serialize_tier(tier)


@router.post("/tiers", response_model=TierProvisionResponse, status_code=status.HTTP_201_CREATED)
async def provision_tier(
    payload: TierProvisionSpec,
    tier_id: UUID | None = None,
    store: SqlAlchemyStateStore = Depends(get_state_store),
    crm_client: CrmClient = Depends(get_crm_client),
) -> TierProvisionResponse:
    """Create the tier's club, promotions and loyalty tier in the CRM, then persist it."""

    saga = TierProvisioningSaga(crm_client, store)
    try:
        result = await saga.provision_tier(payload, tier_id=tier_id)
    except (TierNotFoundError, ProgramNotFoundError) as error:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error)) from error
    except TierAlreadyProvisionedError as error:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error)) from error
    except TierProvisioningError as error:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "message": "CRM provisioning failed and was rolled back",
                "failedStep": error.failed_step,
                "cause": str(error.cause),
                "compensationWarnings": error.compensation_failures,
            },
        ) from error
    except TierPersistenceError as error:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": "CRM resources were created but could not be saved; manual reconciliation required",
                "clubId": error.club_id,
                "promotionIds": error.promotion_ids,
                "loyaltyTierId": error.loyalty_tier_id,
            },
        ) from error

    return TierProvisionResponse(
        tier_id=result.tier_id,
        club_id=result.club_id,
        promotion_ids=result.promotion_ids,
        loyalty_tier_id=result.loyalty_tier_id,
    )


@router.delete("/tiers/{tier_id}", response_model=TierDeprovisionResponse)
async def deprovision_tier(
    tier_id: UUID,
    store: SqlAlchemyStateStore = Depends(get_state_store),
    crm_client: CrmClient = Depends(get_crm_client),
) -> TierDeprovisionResponse:
    saga = TierProvisioningSaga(crm_client, store)
    try:
        result = await saga.deprovision_tier(tier_id)
    except TierNotFoundError as error:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error)) from error
    return TierDeprovisionResponse(tier_id=result.tier_id, deleted=result.deleted, warnings=result.warnings)


@router.post("/enrollments", response_model=EnrollmentResponse, status_code=status.HTTP_201_CREATED)
async def create_enrollment(
    payload: EnrollmentCreateRequest,
    store: SqlAlchemyStateStore = Depends(get_state_store),
) -> EnrollmentResponse:
    try:
        change = await EnrollmentService(store).enroll(
            payload.customer_crm_id, payload.tier_id, enrolled_at=payload.enrolled_at
        )
    except EnrollmentError as error:
        raise _enrollment_http_error(error) from error
    return _change_response(change)


@router.post("/enrollments/{enrollment_id}/tier", response_model=EnrollmentResponse)
async def change_enrollment_tier(
    enrollment_id: UUID,
    payload: EnrollmentTierChangeRequest,
    store: SqlAlchemyStateStore = Depends(get_state_store),
) -> EnrollmentResponse:
    try:
        change = await EnrollmentService(store).change_tier(enrollment_id, payload.tier_id)
    except EnrollmentError as error:
        raise _enrollment_http_error(error) from error
    return _change_response(change)


@router.post("/enrollments/{enrollment_id}/cancel", response_model=EnrollmentResponse)
async def cancel_enrollment(
    enrollment_id: UUID,
    store: SqlAlchemyStateStore = Depends(get_state_store),
) -> EnrollmentResponse:
    try:
        change = await EnrollmentService(store).cancel(enrollment_id)
    except EnrollmentError as error:
        raise _enrollment_http_error(error) from error
    return _change_response(change)
