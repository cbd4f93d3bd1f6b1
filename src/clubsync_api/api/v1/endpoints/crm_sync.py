from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from clubsync_api.api.dependencies.crm import get_state_store
from clubsync_api.api.dependencies.security import require_cron_api_key
from clubsync_api.models.crm_sync import CrmSyncStatusEnum
from clubsync_api.observability.crm_sync import get_crm_sync_store
from clubsync_api.observability.provisioning import get_provisioning_store
from clubsync_api.schemas.crm_sync import CrmSyncEntryResponse, CrmSyncRunResponse, SyncStatus
from clubsync_api.services.crm_sync import CrmSyncQueueProcessor
from clubsync_api.services.membership import SqlAlchemyStateStore

router = APIRouter(prefix="/crm-sync", tags=["CRM Sync"])


def _get_processor(request: Request) -> CrmSyncQueueProcessor:
    processor = getattr(request.app.state, "crm_sync_processor", None)
    if processor is None:
        raise HTTPException(status_code=503, detail="CRM sync processor unavailable")
    return processor


@router.get("/metrics", summary="CRM sync processor metrics")
async def crm_sync_metrics(request: Request) -> dict[str, object]:
    processor = _get_processor(request)
    return processor.metrics.snapshot()


@router.get("/health", summary="CRM sync processor health")
async def crm_sync_health(request: Request) -> dict[str, object]:
    processor = _get_processor(request)
    return processor.health_snapshot()


@router.get("/observability", summary="CRM sync observability snapshot")
async def crm_sync_observability() -> dict[str, object]:
    """Return aggregated queue and provisioning counters suitable for dashboards/alerts."""
    return {
        "queue": get_crm_sync_store().snapshot().as_dict(),
        "provisioning": get_provisioning_store().snapshot().as_dict(),
    }


@router.get("/entries", response_model=list[CrmSyncEntryResponse])
async def list_crm_sync_entries(
    status_filter: SyncStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    store: SqlAlchemyStateStore = Depends(get_state_store),
) -> list[CrmSyncEntryResponse]:
    entries = await store.list_entries(
        status=CrmSyncStatusEnum(status_filter) if status_filter else None,
        limit=limit,
    )
    return [CrmSyncEntryResponse.model_validate(entry) for entry in entries]


@router.post(
    "/entries/{entry_id}/retry",
    response_model=CrmSyncEntryResponse,
    dependencies=[Depends(require_cron_api_key)],
)
async def retry_crm_sync_entry(
    entry_id: UUID,
    request: Request,
    store: SqlAlchemyStateStore = Depends(get_state_store),
) -> CrmSyncEntryResponse:
    processor = _get_processor(request)
    entry = await store.get_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync entry not found")
    if not await processor.requeue_failed_entry(entry_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only failed entries can be retried")
    refreshed = await store.get_entry(entry_id)
    return CrmSyncEntryResponse.model_validate(refreshed)


@router.post(
    "/process",
    response_model=CrmSyncRunResponse,
    dependencies=[Depends(require_cron_api_key)],
    summary="Process due CRM sync entries (cron trigger)",
)
async def process_crm_sync_queue(
    request: Request,
    batch_size: int | None = Query(default=None, ge=1, le=500, alias="batchSize"),
) -> CrmSyncRunResponse:
    processor = _get_processor(request)
    summary = await processor.run_once(batch_size)
    return CrmSyncRunResponse(**summary.as_dict())
