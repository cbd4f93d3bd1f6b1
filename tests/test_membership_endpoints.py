from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from clubsync_api.services.crm import CrmPermanentError


def _tier_payload(program_id: str, name: str = "Gold", promotions: int = 1) -> dict:
    return {
        "programId": program_id,
        "name": name,
        "description": f"{name} members",
        "durationMonths": 12,
        "minPurchaseAmount": "150.00",
        "tierOrder": 1,
        "promotions": [
            {"title": f"{name} {index}", "productDiscountType": "percentage", "productDiscount": 10}
            for index in range(promotions)
        ],
        "loyalty": {"earnRate": 0.02, "initialPointsBonus": 100},
    }


async def _create_program(client: AsyncClient) -> str:
    response = await client.post("/api/v1/membership/programs", json={"name": "Wine Club"})
    assert response.status_code == 201
    return response.json()["id"]


@pytest.mark.asyncio
async def test_provision_tier_and_read_it_back(app_with_db, crm_client) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        program_id = await _create_program(client)
        response = await client.post("/api/v1/membership/tiers", json=_tier_payload(program_id, promotions=2))
        assert response.status_code == 201
        created = response.json()

        tier_response = await client.get(f"/api/v1/membership/tiers/{created['tierId']}")

    assert created["clubId"] in crm_client.clubs
    assert len(created["promotionIds"]) == 2
    assert created["loyaltyTierId"] in crm_client.loyalty_tiers
    tier = tier_response.json()
    assert tier["crmClubId"] == created["clubId"]
    assert tier["isComplete"] is True
    assert [promotion["crmPromotionId"] for promotion in tier["promotions"]] == created["promotionIds"]
    assert tier["loyalty"]["crmLoyaltyTierId"] == created["loyaltyTierId"]
    assert tier["minPurchaseAmount"] == 150.0


@pytest.mark.asyncio
async def test_failed_provisioning_returns_bad_gateway(app_with_db, crm_client) -> None:
    app, _ = app_with_db
    crm_client.inject_failure("create_promotion", CrmPermanentError("discount rejected", status_code=422), skip=1)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        program_id = await _create_program(client)
        response = await client.post("/api/v1/membership/tiers", json=_tier_payload(program_id, "Silver", 2))

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["failedStep"] == "create_promotion[1]"
    assert detail["cause"] == "discount rejected"
    assert detail["compensationWarnings"] == []
    assert crm_client.clubs == {}
    assert crm_client.promotions == {}


@pytest.mark.asyncio
async def test_provision_tier_validation_and_lookup_errors(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        program_id = await _create_program(client)
        invalid = _tier_payload(program_id)
        invalid["promotions"] = [{"title": "No discount"}]
        invalid_response = await client.post("/api/v1/membership/tiers", json=invalid)

        missing_program = await client.post(
            "/api/v1/membership/tiers", json=_tier_payload("00000000-0000-0000-0000-000000000000")
        )
        missing_tier = await client.get("/api/v1/membership/tiers/00000000-0000-0000-0000-000000000000")

    assert invalid_response.status_code == 422
    assert missing_program.status_code == 404
    assert missing_tier.status_code == 404


@pytest.mark.asyncio
async def test_deprovision_tier(app_with_db, crm_client) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        program_id = await _create_program(client)
        created = (await client.post("/api/v1/membership/tiers", json=_tier_payload(program_id))).json()
        response = await client.delete(f"/api/v1/membership/tiers/{created['tierId']}")
        again = await client.delete(f"/api/v1/membership/tiers/{created['tierId']}")

    assert response.status_code == 200
    body = response.json()
    assert body["warnings"] == []
    assert set(body["deleted"]) == {created["clubId"], created["loyaltyTierId"], *created["promotionIds"]}
    assert crm_client.clubs == {}
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_enrollment_lifecycle_endpoints(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        program_id = await _create_program(client)
        gold = (await client.post("/api/v1/membership/tiers", json=_tier_payload(program_id, "Gold"))).json()
        silver = (await client.post("/api/v1/membership/tiers", json=_tier_payload(program_id, "Silver"))).json()

        enrolled = await client.post(
            "/api/v1/membership/enrollments",
            json={"customerCrmId": "cust_1", "tierId": gold["tierId"]},
        )
        duplicate = await client.post(
            "/api/v1/membership/enrollments",
            json={"customerCrmId": "cust_1", "tierId": gold["tierId"]},
        )
        enrollment_id = enrolled.json()["id"]
        same_tier = await client.post(
            f"/api/v1/membership/enrollments/{enrollment_id}/tier", json={"tierId": gold["tierId"]}
        )
        moved = await client.post(
            f"/api/v1/membership/enrollments/{enrollment_id}/tier", json={"tierId": silver["tierId"]}
        )
        cancelled = await client.post(f"/api/v1/membership/enrollments/{enrollment_id}/cancel")
        unknown = await client.post("/api/v1/membership/enrollments/00000000-0000-0000-0000-000000000000/cancel")

    assert enrolled.status_code == 201
    assert enrolled.json()["status"] == "active"
    assert enrolled.json()["syncEntryId"]
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["code"] == "already_enrolled"
    assert same_tier.status_code == 400
    assert moved.status_code == 200
    assert moved.json()["tierId"] == silver["tierId"]
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert unknown.status_code == 404
