from __future__ import annotations

import pytest

from clubsync_api.celery_tasks import crm_sync as tasks
from clubsync_api.core.settings import settings
from clubsync_api.services.crm import InMemoryCrmClient
from clubsync_api.services.membership import EnrollmentService, SqlAlchemyStateStore
from clubsync_api.tasks.crm_sync import requeue_failed_entry, run_crm_sync_batch, run_enrollment_expiration_sweep

from conftest import create_program, provision_tier


def test_process_task_skips_when_disabled(monkeypatch):
    monkeypatch.setattr(settings, "crm_sync_worker_enabled", False)
    result = tasks.process_crm_sync_queue()
    assert result["skipped"] is True
    assert result["completed"] == 0


def test_process_task_invokes_helper(monkeypatch):
    monkeypatch.setattr(settings, "crm_sync_worker_enabled", True)

    captured = {}

    def fake_run(batch_size=None, session_factory=None, crm_client=None):
        captured["batch_size"] = batch_size
        return {"selected": 3, "completed": 3, "failed": 0}

    monkeypatch.setattr(tasks, "run_crm_sync_batch_sync", fake_run)

    result = tasks.process_crm_sync_queue(batch_size=25)
    assert result["completed"] == 3
    assert captured["batch_size"] == 25


def test_expiration_task_skips_when_disabled(monkeypatch):
    monkeypatch.setattr(settings, "enrollment_expiration_worker_enabled", False)
    result = tasks.expire_enrollments()
    assert result == {"expired": 0, "skipped": True}


def test_expiration_task_invokes_helper(monkeypatch):
    monkeypatch.setattr(settings, "enrollment_expiration_worker_enabled", True)

    def fake_expire(limit=500, session_factory=None):
        return {"expired": limit, "sync_entries": []}

    monkeypatch.setattr(tasks, "run_enrollment_expiration_sync", fake_expire)

    assert tasks.expire_enrollments(limit=7)["expired"] == 7


@pytest.mark.asyncio
async def test_batch_helper_runs_processor(session_factory):
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id)
    async with session_factory() as session:
        await EnrollmentService(SqlAlchemyStateStore(session)).enroll("cust_1", gold.tier_id)

    result = await run_crm_sync_batch(batch_size=10, session_factory=session_factory, crm_client=crm)

    assert result["completed"] == 1
    assert result["released"] == 0
    assert crm.promotions_for_customer("cust_1") == gold.promotion_ids

    expiration = await run_enrollment_expiration_sweep(session_factory=session_factory)
    assert expiration["expired"] == 0


@pytest.mark.asyncio
async def test_requeue_helper_ignores_non_failed_entries(session_factory):
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id)
    async with session_factory() as session:
        change = await EnrollmentService(SqlAlchemyStateStore(session)).enroll("cust_1", gold.tier_id)

    assert await requeue_failed_entry(change.sync_entry_id, session_factory=session_factory, crm_client=crm) is False
