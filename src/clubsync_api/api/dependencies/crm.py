"""Request-scoped access to the CRM client and state store."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from clubsync_api.db.session import get_session
from clubsync_api.services.crm import CrmClient
from clubsync_api.services.membership import SqlAlchemyStateStore


def get_crm_client(request: Request) -> CrmClient:
    client = getattr(request.app.state, "crm_client", None)
    if client is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="CRM client unavailable")
    return client


async def get_state_store(db: AsyncSession = Depends(get_session)) -> SqlAlchemyStateStore:
    return SqlAlchemyStateStore(db)
