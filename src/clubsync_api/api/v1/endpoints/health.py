from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clubsync_api.core.settings import settings
from clubsync_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_error_at: str | None = Field(default=None, description="ISO timestamp of most recent error")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as exc:
        logger.warning("Readiness database probe failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        status = "error"

    processor = getattr(request.app.state, "crm_sync_processor", None)
    if settings.crm_sync_worker_enabled and processor is not None:
        metrics = processor.metrics
        running = processor.is_running
        component_status: Literal["ready", "starting", "disabled", "error"]
        component_status = "ready" if running else "starting"
        detail: str | None = None
        if metrics.last_error:
            component_status = "error"
            detail = metrics.last_error
            status = "error"
        elif not running:
            detail = "CRM sync processor not running"
            status = "degraded" if status != "error" else status
        components["crm_sync_worker"] = ComponentStatus(
            status=component_status,
            detail=detail,
            last_error_at=metrics.last_error_at.isoformat() if metrics.last_error_at else None,
        )
    else:
        components["crm_sync_worker"] = ComponentStatus(
            status="disabled",
            detail="CRM sync worker disabled via settings",
        )

    expiration_worker = getattr(request.app.state, "enrollment_expiration_worker", None)
    if settings.enrollment_expiration_worker_enabled and expiration_worker is not None:
        running = bool(getattr(expiration_worker, "is_running", False))
        worker_status: Literal["ready", "starting", "disabled", "error"] = "ready" if running else "starting"
        detail = None if running else "Enrollment expiration worker not running"
        if not running:
            status = "degraded" if status != "error" else status
        components["enrollment_expiration"] = ComponentStatus(status=worker_status, detail=detail)
    else:
        components["enrollment_expiration"] = ComponentStatus(
            status="disabled",
            detail="Enrollment expiration worker disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
