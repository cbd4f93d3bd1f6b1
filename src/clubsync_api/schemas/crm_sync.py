from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from clubsync_api.models.crm_sync import CrmSyncActionTypeEnum, CrmSyncStatusEnum
from clubsync_api.schemas.crm import _to_camel

SyncStatus = Literal["pending", "processing", "completed", "failed", "superseded"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=_to_camel, from_attributes=True)


class CrmSyncEntryResponse(_CamelModel):
    id: UUID
    action_type: CrmSyncActionTypeEnum
    customer_crm_id: str
    enrollment_id: UUID
    old_tier_id: UUID | None
    new_tier_id: UUID | None
    status: CrmSyncStatusEnum
    attempts: int
    max_attempts: int
    last_attempt_at: datetime | None
    next_retry_at: datetime | None
    error_message: str | None
    superseded_by_id: UUID | None
    created_at: datetime


class CrmSyncRunResponse(_CamelModel):
    selected: int
    claimed: int
    completed: int
    retried: int
    failed: int
    skipped: int
    released: int = 0
