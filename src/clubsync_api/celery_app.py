"""Celery application setup for CRM sync and membership maintenance jobs."""

from __future__ import annotations

from celery import Celery

from clubsync_api.core.settings import settings


def _resolve_backend_url() -> str:
    if settings.celery_result_backend:
        return settings.celery_result_backend
    return settings.redis_url


def _resolve_broker_url() -> str:
    if settings.celery_broker_url:
        return settings.celery_broker_url
    return settings.redis_url


def _build_beat_schedule() -> dict[str, dict[str, object]]:
    if not settings.celery_beat_enabled:
        return {}
    return {
        "crm-sync-process-due-entries": {
            "task": "crm_sync.process_due_entries",
            "schedule": float(settings.crm_sync_poll_interval_seconds),
            "options": {"queue": settings.crm_sync_task_queue},
        },
        "membership-expire-enrollments": {
            "task": "membership.expire_enrollments",
            "schedule": float(settings.enrollment_expiration_interval_seconds),
            "options": {"queue": settings.crm_sync_task_queue},
        },
    }


celery_app = Celery(
    "clubsync_api",
    broker=_resolve_broker_url(),
    backend=_resolve_backend_url(),
)

celery_app.conf.update(
    task_default_queue=settings.celery_default_queue,
    timezone="UTC",
    broker_connection_retry_on_startup=True,
    beat_schedule=_build_beat_schedule(),
)

celery_app.autodiscover_tasks(["clubsync_api.celery_tasks"])

__all__ = ["celery_app"]
