"""REST-backed CRM client built on httpx."""

from __future__ import annotations

from typing import Any, Mapping
from urllib.parse import quote

import httpx
from loguru import logger

from clubsync_api.core.settings import settings
from clubsync_api.schemas.crm import CreateClubSpec, CreateLoyaltyTierSpec, CreatePromotionSpec

from .errors import CrmError, CrmNotFoundError, CrmPermanentError, CrmTransientError


class HttpCrmClient:
    """Talks to the CRM REST API.

    HTTP status codes are mapped onto the CRM error taxonomy: 404 becomes
    ``CrmNotFoundError``, 429/5xx and network failures become
    ``CrmTransientError`` and any other 4xx becomes ``CrmPermanentError``.
    Delete and removal calls swallow 404 so they stay idempotent.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_token: str | None = None,
        tenant: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = (base_url or settings.crm_api_base_url).rstrip("/")
        self._api_token = api_token if api_token is not None else settings.crm_api_token
        self._tenant = tenant if tenant is not None else settings.crm_tenant
        self._timeout = timeout or settings.crm_timeout_seconds
        self._http_client = http_client

    async def create_club(self, spec: CreateClubSpec) -> str:
        payload = spec.model_dump(by_alias=True, exclude_none=True)
        data = await self._request("POST", "/club", operation="create_club", json=payload)
        return self._extract_id(data, "club", operation="create_club")

    async def delete_club(self, club_id: str) -> None:
        await self._delete(f"/club/{quote(club_id, safe='')}", operation="delete_club")

    async def create_promotion(self, club_id: str, spec: CreatePromotionSpec) -> str:
        payload = spec.model_dump(by_alias=True, exclude_none=True)
        payload["clubId"] = club_id
        data = await self._request("POST", "/promotion", operation="create_promotion", json=payload)
        return self._extract_id(data, "promotion", operation="create_promotion")

    async def delete_promotion(self, promotion_id: str) -> None:
        await self._delete(f"/promotion/{quote(promotion_id, safe='')}", operation="delete_promotion")

    async def create_loyalty_tier(self, club_id: str, spec: CreateLoyaltyTierSpec) -> str:
        payload = spec.model_dump(by_alias=True, exclude_none=True)
        payload["clubId"] = club_id
        data = await self._request("POST", "/loyalty-tier", operation="create_loyalty_tier", json=payload)
        return self._extract_id(data, "loyaltyTier", operation="create_loyalty_tier")

    async def delete_loyalty_tier(self, loyalty_tier_id: str) -> None:
        await self._delete(f"/loyalty-tier/{quote(loyalty_tier_id, safe='')}", operation="delete_loyalty_tier")

    async def add_customer_to_promotion(self, customer_id: str, promotion_id: str) -> None:
        await self._request(
            "PUT",
            self._membership_path(customer_id, promotion_id),
            operation="add_customer_to_promotion",
        )

    async def remove_customer_from_promotion(self, customer_id: str, promotion_id: str) -> None:
        await self._delete(
            self._membership_path(customer_id, promotion_id),
            operation="remove_customer_from_promotion",
        )

    @staticmethod
    def _membership_path(customer_id: str, promotion_id: str) -> str:
        return f"/promotion/{quote(promotion_id, safe='')}/customer/{quote(customer_id, safe='')}"

    async def _delete(self, path: str, *, operation: str) -> None:
        try:
            await self._request("DELETE", path, operation=operation)
        except CrmNotFoundError:
            logger.debug("CRM resource already absent", operation=operation, path=path)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        if self._tenant:
            headers["tenant"] = self._tenant
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        close_client = False
        client = self._http_client
        if client is None:
            client = httpx.AsyncClient(timeout=self._timeout)
            close_client = True

        url = f"{self._base_url}{path}"
        try:
            response = await client.request(method, url, json=json, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise CrmTransientError(f"{operation} timed out", operation=operation) from exc
        except httpx.TransportError as exc:
            raise CrmTransientError(f"{operation} failed: {exc}", operation=operation) from exc
        finally:
            if close_client:
                await client.aclose()

        if response.status_code == 204:
            return None
        if response.is_success:
            if not response.content:
                return None
            try:
                body = response.json()
            except ValueError as exc:
                raise CrmPermanentError(
                    f"{operation} returned a non-JSON body",
                    status_code=response.status_code,
                    operation=operation,
                ) from exc
            return body if isinstance(body, dict) else {"data": body}

        raise self._map_error(response, operation)

    @staticmethod
    def _map_error(response: httpx.Response, operation: str) -> CrmError:
        status = response.status_code
        detail = _error_detail(response)
        message = f"{operation} failed with HTTP {status}"
        if detail:
            message = f"{message}: {detail}"
        logger.warning("CRM request rejected", operation=operation, status_code=status, detail=detail)
        if status == 404:
            return CrmNotFoundError(message, status_code=status, operation=operation)
        if status == 429 or status >= 500:
            return CrmTransientError(message, status_code=status, operation=operation)
        return CrmPermanentError(message, status_code=status, operation=operation)

    @staticmethod
    def _extract_id(data: Mapping[str, Any] | None, envelope: str, *, operation: str) -> str:
        if data:
            nested = data.get(envelope)
            if isinstance(nested, Mapping) and nested.get("id"):
                return str(nested["id"])
            if data.get("id"):
                return str(data["id"])
        raise CrmPermanentError(f"{operation} response did not include an id", operation=operation)


def _error_detail(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:500] or None
    if isinstance(body, Mapping):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return None


__all__ = ["HttpCrmClient"]
