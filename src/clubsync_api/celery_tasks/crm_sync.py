from __future__ import annotations

from loguru import logger

from clubsync_api.celery_app import celery_app
from clubsync_api.core.settings import settings
from clubsync_api.tasks.crm_sync import run_crm_sync_batch_sync, run_enrollment_expiration_sync


@celery_app.task(
    name="crm_sync.process_due_entries",
    queue=settings.crm_sync_task_queue,
)
def process_crm_sync_queue(batch_size: int | None = None) -> dict[str, object]:
    """Drain one batch of the CRM sync queue via Celery."""

    if not settings.crm_sync_worker_enabled:
        logger.info("CRM sync worker disabled; skipping Celery task.")
        return {"selected": 0, "completed": 0, "failed": 0, "skipped": True}
    return run_crm_sync_batch_sync(batch_size=batch_size)


@celery_app.task(
    name="membership.expire_enrollments",
    queue=settings.crm_sync_task_queue,
)
def expire_enrollments(limit: int = 500) -> dict[str, object]:
    """Expire lapsed enrollments via Celery."""

    if not settings.enrollment_expiration_worker_enabled:
        logger.info("Enrollment expiration worker disabled; skipping Celery task.")
        return {"expired": 0, "skipped": True}
    return run_enrollment_expiration_sync(limit=limit)
