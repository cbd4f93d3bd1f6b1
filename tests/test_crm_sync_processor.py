from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from clubsync_api.models.crm_sync import CrmSyncActionTypeEnum, CrmSyncQueueEntry, CrmSyncStatusEnum
from clubsync_api.models.membership import EnrollmentStatusEnum, MembershipEnrollment
from clubsync_api.observability.crm_sync import get_crm_sync_store
from clubsync_api.services.crm import CrmNotFoundError, CrmPermanentError, CrmTransientError, InMemoryCrmClient
from clubsync_api.services.crm_sync import CrmSyncQueueProcessor, CrmSyncQueueProducer, MissingTierError
from clubsync_api.services.crm_sync.processor import is_permanent_failure
from clubsync_api.services.membership import EnrollmentService, SqlAlchemyStateStore

from conftest import create_program, provision_tier


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _get_entry(session_factory, entry_id) -> CrmSyncQueueEntry:
    async with session_factory() as session:
        return await session.get(CrmSyncQueueEntry, entry_id)


async def _make_due(session_factory, entry_id) -> None:
    async with session_factory() as session:
        await session.execute(
            update(CrmSyncQueueEntry)
            .where(CrmSyncQueueEntry.id == entry_id)
            .values(next_retry_at=_utcnow() - timedelta(seconds=1))
        )
        await session.commit()


async def _drain(processor: CrmSyncQueueProcessor, batch_size: int) -> int:
    runs = 0
    while runs < 20:
        summary = await processor.process_due_entries(batch_size)
        runs += 1
        if summary.selected == 0:
            break
    return runs


async def _seed_enrollment(session_factory, tier_id, customer: str = "cust_1") -> MembershipEnrollment:
    now = _utcnow()
    async with session_factory() as session:
        enrollment = MembershipEnrollment(
            customer_crm_id=customer,
            tier_id=tier_id,
            status=EnrollmentStatusEnum.ACTIVE,
            enrolled_at=now,
            expires_at=now + timedelta(days=365),
        )
        session.add(enrollment)
        await session.commit()
        return enrollment


async def _add_entries(session_factory, enrollment, transitions) -> list:
    """Insert entries directly so several stay pending for one enrollment."""
    base = _utcnow() - timedelta(minutes=5)
    ids = []
    async with session_factory() as session:
        for index, (action, old_tier_id, new_tier_id) in enumerate(transitions):
            entry = CrmSyncQueueEntry(
                action_type=action,
                customer_crm_id=enrollment.customer_crm_id,
                enrollment_id=enrollment.id,
                old_tier_id=old_tier_id,
                new_tier_id=new_tier_id,
                status=CrmSyncStatusEnum.PENDING,
                attempts=0,
                max_attempts=5,
                next_retry_at=base,
                created_at=base + timedelta(seconds=index),
            )
            session.add(entry)
            ids.append(entry.id)
        await session.commit()
    return ids


@pytest.mark.asyncio
async def test_add_entry_adds_customer_to_every_tier_promotion(session_factory) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id, "Gold", promotions=2)
    async with session_factory() as session:
        enrolled = await EnrollmentService(SqlAlchemyStateStore(session)).enroll("cust_1", gold.tier_id)

    processor = CrmSyncQueueProcessor(session_factory, crm)
    summary = await processor.process_due_entries(10)

    assert summary.as_dict() == {
        "selected": 1,
        "claimed": 1,
        "completed": 1,
        "retried": 0,
        "failed": 0,
        "skipped": 0,
        "released": 0,
    }
    assert sorted(crm.promotions_for_customer("cust_1")) == sorted(gold.promotion_ids)
    entry = await _get_entry(session_factory, enrolled.sync_entry_id)
    assert entry.status == CrmSyncStatusEnum.COMPLETED
    assert entry.attempts == 1
    assert entry.completed_at is not None
    assert processor.metrics.entries_completed == 1


@pytest.mark.asyncio
async def test_remove_entry_removes_customer(session_factory) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id, "Gold")
    processor = CrmSyncQueueProcessor(session_factory, crm)
    async with session_factory() as session:
        enrolled = await EnrollmentService(SqlAlchemyStateStore(session)).enroll("cust_1", gold.tier_id)
    await processor.process_due_entries(10)

    async with session_factory() as session:
        cancelled = await EnrollmentService(SqlAlchemyStateStore(session)).cancel(enrolled.enrollment.id)
    await processor.process_due_entries(10)

    assert crm.promotions_for_customer("cust_1") == []
    entry = await _get_entry(session_factory, cancelled.sync_entry_id)
    assert entry.action_type == CrmSyncActionTypeEnum.REMOVE_FROM_TIER
    assert entry.status == CrmSyncStatusEnum.COMPLETED


@pytest.mark.asyncio
@pytest.mark.parametrize("batch_size", [1, 10])
async def test_transitions_apply_in_creation_order(session_factory, batch_size) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    tier_a = await provision_tier(session_factory, crm, program.id, "A", promotions=2)
    tier_b = await provision_tier(session_factory, crm, program.id, "B")
    tier_c = await provision_tier(session_factory, crm, program.id, "C", promotions=2)
    enrollment = await _seed_enrollment(session_factory, tier_c.tier_id)
    other = await _seed_enrollment(session_factory, tier_b.tier_id, customer="cust_2")
    ids = await _add_entries(
        session_factory,
        enrollment,
        [
            (CrmSyncActionTypeEnum.ADD_TO_TIER, None, tier_a.tier_id),
            (CrmSyncActionTypeEnum.MOVE_TIER, tier_a.tier_id, tier_b.tier_id),
            (CrmSyncActionTypeEnum.MOVE_TIER, tier_b.tier_id, tier_c.tier_id),
        ],
    )
    await _add_entries(session_factory, other, [(CrmSyncActionTypeEnum.ADD_TO_TIER, None, tier_b.tier_id)])

    processor = CrmSyncQueueProcessor(session_factory, crm)
    await _drain(processor, batch_size)

    assert sorted(crm.promotions_for_customer("cust_1")) == sorted(tier_c.promotion_ids)
    assert crm.promotions_for_customer("cust_2") == tier_b.promotion_ids
    for entry_id in ids:
        assert (await _get_entry(session_factory, entry_id)).status == CrmSyncStatusEnum.COMPLETED

    member_calls = [call for call in crm.calls if call[0].endswith("_promotion") and call[1] == "cust_1"]
    first_move = member_calls.index(("remove_customer_from_promotion", "cust_1", tier_a.promotion_ids[0]))
    assert all(call[0] == "add_customer_to_promotion" for call in member_calls[:first_move])


@pytest.mark.asyncio
async def test_reenrollment_waits_for_the_cancelled_enrollment_removal(session_factory) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id, "Gold")
    processor = CrmSyncQueueProcessor(session_factory, crm)
    customers = [f"cust_{index}" for index in range(12)]

    async with session_factory() as session:
        service = EnrollmentService(SqlAlchemyStateStore(session))
        first_enrollments = {}
        for customer in customers:
            first_enrollments[customer] = (await service.enroll(customer, gold.tier_id)).enrollment.id
    await _drain(processor, 100)

    async with session_factory() as session:
        service = EnrollmentService(SqlAlchemyStateStore(session))
        for customer in customers:
            await service.cancel(first_enrollments[customer])
            await service.enroll(customer, gold.tier_id)

    first = await processor.process_due_entries(100)
    assert first.completed == len(customers)
    await _drain(processor, 100)

    assert [customer for customer in customers if crm.promotions_for_customer(customer) != gold.promotion_ids] == []
    for customer in customers:
        member_calls = [call[0] for call in crm.calls if len(call) > 1 and call[1] == customer]
        assert member_calls == [
            "add_customer_to_promotion",
            "remove_customer_from_promotion",
            "add_customer_to_promotion",
        ]


@pytest.mark.asyncio
async def test_blocked_entry_waits_for_older_open_entry(session_factory) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    tier_a = await provision_tier(session_factory, crm, program.id, "A")
    tier_b = await provision_tier(session_factory, crm, program.id, "B")
    enrollment = await _seed_enrollment(session_factory, tier_b.tier_id)
    add_id, move_id = await _add_entries(
        session_factory,
        enrollment,
        [
            (CrmSyncActionTypeEnum.ADD_TO_TIER, None, tier_a.tier_id),
            (CrmSyncActionTypeEnum.MOVE_TIER, tier_a.tier_id, tier_b.tier_id),
        ],
    )

    async with session_factory() as session:
        due = await SqlAlchemyStateStore(session).select_due_entries(_utcnow(), 10)
    assert [entry.id for entry in due] == [add_id]

    crm.inject_failure("add_customer_to_promotion")
    processor = CrmSyncQueueProcessor(session_factory, crm)
    summary = await processor.process_due_entries(10)
    assert summary.retried == 1
    # The retrying add is still open, so the move must not run ahead of it.
    summary = await processor.process_due_entries(10)
    assert summary.selected == 0
    assert (await _get_entry(session_factory, move_id)).status == CrmSyncStatusEnum.PENDING

    await _make_due(session_factory, add_id)
    await _drain(processor, 10)
    assert crm.promotions_for_customer("cust_1") == tier_b.promotion_ids


@pytest.mark.asyncio
async def test_transient_failures_retry_with_growing_delay_until_failed(session_factory) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id, "Gold")
    async with session_factory() as session:
        store = SqlAlchemyStateStore(session)
        service = EnrollmentService(store, CrmSyncQueueProducer(store, max_attempts=3))
        enrolled = await service.enroll("cust_1", gold.tier_id)
    entry_id = enrolled.sync_entry_id

    crm.inject_failure("add_customer_to_promotion", CrmTransientError("CRM unavailable", status_code=503), times=None)
    processor = CrmSyncQueueProcessor(
        session_factory, crm, retry_base_delay_seconds=60, retry_max_delay_seconds=1800
    )

    retry_times = []
    for attempt in (1, 2):
        summary = await processor.process_due_entries(10)
        assert summary.retried == 1
        entry = await _get_entry(session_factory, entry_id)
        assert entry.status == CrmSyncStatusEnum.PENDING
        assert entry.attempts == attempt
        assert entry.error_message == "CrmTransientError: CRM unavailable"
        retry_times.append(entry.next_retry_at)

        summary = await processor.process_due_entries(10)
        assert summary.selected == 0
        await _make_due(session_factory, entry_id)

    summary = await processor.process_due_entries(10)
    assert summary.failed == 1

    entry = await _get_entry(session_factory, entry_id)
    assert entry.status == CrmSyncStatusEnum.FAILED
    assert entry.attempts == entry.max_attempts == 3
    assert entry.next_retry_at is None
    assert retry_times[0] < retry_times[1]
    assert [call[0] for call in crm.calls].count("add_customer_to_promotion") == 3

    summary = await processor.process_due_entries(10)
    assert summary.selected == 0
    snapshot = get_crm_sync_store().snapshot()
    assert snapshot.totals["retried"] == 2
    assert snapshot.totals["failed"] == 1
    assert snapshot.events.last_failure_entry_id == str(entry_id)


def test_retry_delay_doubles_and_is_capped() -> None:
    processor = CrmSyncQueueProcessor(
        lambda: None, InMemoryCrmClient(), retry_base_delay_seconds=60, retry_max_delay_seconds=1800
    )

    delays = [processor._compute_retry_delay(attempt) for attempt in range(1, 8)]

    assert delays == [60, 120, 240, 480, 960, 1800, 1800]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [CrmPermanentError("customer rejected", status_code=422), CrmNotFoundError("no such promotion", status_code=404)],
)
async def test_permanent_failure_fails_without_retry(session_factory, error) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id, "Gold")
    async with session_factory() as session:
        enrolled = await EnrollmentService(SqlAlchemyStateStore(session)).enroll("cust_1", gold.tier_id)
    crm.inject_failure("add_customer_to_promotion", error)

    summary = await CrmSyncQueueProcessor(session_factory, crm).process_due_entries(10)

    assert summary.failed == 1
    assert summary.retried == 0
    entry = await _get_entry(session_factory, enrolled.sync_entry_id)
    assert entry.status == CrmSyncStatusEnum.FAILED
    assert entry.attempts == 1
    assert type(error).__name__ in entry.error_message


@pytest.mark.asyncio
async def test_missing_tier_is_a_permanent_failure(session_factory) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id, "Gold")
    enrollment = await _seed_enrollment(session_factory, gold.tier_id)
    [entry_id] = await _add_entries(
        session_factory, enrollment, [(CrmSyncActionTypeEnum.ADD_TO_TIER, None, uuid4())]
    )

    summary = await CrmSyncQueueProcessor(session_factory, crm).process_due_entries(10)

    assert summary.failed == 1
    entry = await _get_entry(session_factory, entry_id)
    assert entry.status == CrmSyncStatusEnum.FAILED
    assert entry.error_message.startswith("MissingTierError")
    assert not any(call[0] == "add_customer_to_promotion" for call in crm.calls)


def test_failure_classification() -> None:
    assert is_permanent_failure(CrmPermanentError("bad request"))
    assert is_permanent_failure(CrmNotFoundError("gone"))
    assert is_permanent_failure(MissingTierError(uuid4()))
    assert not is_permanent_failure(CrmTransientError("timeout"))
    assert not is_permanent_failure(RuntimeError("unexpected"))


@pytest.mark.asyncio
async def test_only_one_claim_wins(session_factory) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id, "Gold")
    async with session_factory() as session:
        enrolled = await EnrollmentService(SqlAlchemyStateStore(session)).enroll("cust_1", gold.tier_id)

    async with session_factory() as first_session, session_factory() as second_session:
        first, second = SqlAlchemyStateStore(first_session), SqlAlchemyStateStore(second_session)
        won = await first.claim_entry(enrolled.sync_entry_id, _utcnow())
        await first.commit()
        lost = await second.claim_entry(enrolled.sync_entry_id, _utcnow())
        await second.commit()

    assert won is True
    assert lost is False
    entry = await _get_entry(session_factory, enrolled.sync_entry_id)
    assert entry.status == CrmSyncStatusEnum.PROCESSING
    assert entry.attempts == 1


class _RacingStore(SqlAlchemyStateStore):
    """Lets a rival processor run between selection and claim."""

    def __init__(self, session, rival: CrmSyncQueueProcessor) -> None:
        super().__init__(session)
        self._rival = rival

    async def claim_entry(self, entry_id, now):
        if self._rival is not None:
            rival, self._rival = self._rival, None
            await rival.process_due_entries(10)
        return await super().claim_entry(entry_id, now)


@pytest.mark.asyncio
async def test_processor_losing_the_claim_skips_the_entry(session_factory) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id, "Gold")
    async with session_factory() as session:
        enrolled = await EnrollmentService(SqlAlchemyStateStore(session)).enroll("cust_1", gold.tier_id)

    rival = CrmSyncQueueProcessor(session_factory, crm)
    processor = CrmSyncQueueProcessor(
        session_factory, crm, store_factory=lambda session: _RacingStore(session, rival)
    )
    summary = await processor.process_due_entries(10)

    assert summary.selected == 1
    assert summary.claimed == 0
    assert summary.skipped == 1
    assert processor.metrics.claims_lost == 1
    assert rival.metrics.entries_completed == 1
    assert [call[0] for call in crm.calls].count("add_customer_to_promotion") == 1
    entry = await _get_entry(session_factory, enrolled.sync_entry_id)
    assert entry.status == CrmSyncStatusEnum.COMPLETED
    assert entry.attempts == 1

@pytest.mark.asyncio
async def test_stale_claims_are_released(session_factory) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id, "Gold")
    retryable = await _seed_enrollment(session_factory, gold.tier_id, customer="cust_1")
    exhausted = await _seed_enrollment(session_factory, gold.tier_id, customer="cust_2")
    [retryable_id] = await _add_entries(
        session_factory, retryable, [(CrmSyncActionTypeEnum.ADD_TO_TIER, None, gold.tier_id)]
    )
    [exhausted_id] = await _add_entries(
        session_factory, exhausted, [(CrmSyncActionTypeEnum.ADD_TO_TIER, None, gold.tier_id)]
    )
    claimed_at = _utcnow() - timedelta(hours=1)
    async with session_factory() as session:
        await session.execute(
            update(CrmSyncQueueEntry)
            .where(CrmSyncQueueEntry.id == retryable_id)
            .values(status=CrmSyncStatusEnum.PROCESSING, attempts=1, last_attempt_at=claimed_at)
        )
        await session.execute(
            update(CrmSyncQueueEntry)
            .where(CrmSyncQueueEntry.id == exhausted_id)
            .values(status=CrmSyncStatusEnum.PROCESSING, attempts=5, last_attempt_at=claimed_at)
        )
        await session.commit()

    processor = CrmSyncQueueProcessor(session_factory, crm, stale_claim_seconds=60)
    summary = await processor.run_once()

    assert summary.released == 2
    assert summary.completed == 1
    assert (await _get_entry(session_factory, retryable_id)).status == CrmSyncStatusEnum.COMPLETED
    exhausted_entry = await _get_entry(session_factory, exhausted_id)
    assert exhausted_entry.status == CrmSyncStatusEnum.FAILED
    assert exhausted_entry.error_message == "Claim expired after final attempt"
    assert processor.metrics.stale_claims_released == 2


@pytest.mark.asyncio
async def test_recent_claims_are_not_released(session_factory) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id, "Gold")
    async with session_factory() as session:
        enrolled = await EnrollmentService(SqlAlchemyStateStore(session)).enroll("cust_1", gold.tier_id)
    async with session_factory() as session:
        store = SqlAlchemyStateStore(session)
        await store.claim_entry(enrolled.sync_entry_id, _utcnow())
        await store.commit()

    released = await CrmSyncQueueProcessor(session_factory, crm, stale_claim_seconds=900).release_stale_claims()

    assert released == 0
    assert (await _get_entry(session_factory, enrolled.sync_entry_id)).status == CrmSyncStatusEnum.PROCESSING


@pytest.mark.asyncio
async def test_requeue_failed_entry_resets_attempts(session_factory) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id, "Gold")
    async with session_factory() as session:
        enrolled = await EnrollmentService(SqlAlchemyStateStore(session)).enroll("cust_1", gold.tier_id)
    crm.inject_failure("add_customer_to_promotion", CrmPermanentError("rejected"))
    processor = CrmSyncQueueProcessor(session_factory, crm)
    await processor.process_due_entries(10)

    assert await processor.requeue_failed_entry(enrolled.sync_entry_id) is True
    entry = await _get_entry(session_factory, enrolled.sync_entry_id)
    assert entry.status == CrmSyncStatusEnum.PENDING
    assert entry.attempts == 0
    assert entry.error_message is None
    assert await processor.requeue_failed_entry(enrolled.sync_entry_id) is False

    await processor.process_due_entries(10)
    assert crm.promotions_for_customer("cust_1") == gold.promotion_ids


@pytest.mark.asyncio
async def test_requeue_is_refused_once_a_newer_transition_exists(session_factory) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id, "Gold")
    silver = await provision_tier(session_factory, crm, program.id, "Silver")
    processor = CrmSyncQueueProcessor(session_factory, crm)

    async with session_factory() as session:
        enrolled = await EnrollmentService(SqlAlchemyStateStore(session)).enroll("cust_1", gold.tier_id)
    crm.inject_failure("add_customer_to_promotion", CrmPermanentError("rejected"))
    assert (await processor.process_due_entries(10)).failed == 1

    async with session_factory() as session:
        await EnrollmentService(SqlAlchemyStateStore(session)).change_tier(enrolled.enrollment.id, silver.tier_id)
    assert (await processor.process_due_entries(10)).completed == 1

    assert await processor.requeue_failed_entry(enrolled.sync_entry_id) is False
    assert (await _get_entry(session_factory, enrolled.sync_entry_id)).status == CrmSyncStatusEnum.FAILED
    await processor.process_due_entries(10)
    assert crm.promotions_for_customer("cust_1") == silver.promotion_ids


@pytest.mark.asyncio
async def test_start_loop_stops_on_request(session_factory) -> None:
    processor = CrmSyncQueueProcessor(session_factory, InMemoryCrmClient(), poll_interval_seconds=1)

    task = asyncio.create_task(processor.start())
    await asyncio.sleep(0.05)
    assert processor.is_running
    processor.stop()
    await asyncio.wait_for(task, timeout=2)

    assert not processor.is_running
    assert processor.metrics.runs >= 1
    health = processor.health_snapshot()
    assert health["running"] is False
    assert health["metrics"]["runs"] == processor.metrics.runs


@pytest.mark.asyncio
async def test_entries_listing_filters_by_status(session_factory) -> None:
    crm = InMemoryCrmClient()
    program = await create_program(session_factory)
    gold = await provision_tier(session_factory, crm, program.id, "Gold")
    async with session_factory() as session:
        await EnrollmentService(SqlAlchemyStateStore(session)).enroll("cust_1", gold.tier_id)
        await EnrollmentService(SqlAlchemyStateStore(session)).enroll("cust_2", gold.tier_id)
    crm.inject_failure("add_customer_to_promotion", CrmPermanentError("rejected"))
    await CrmSyncQueueProcessor(session_factory, crm).process_due_entries(10)

    async with session_factory() as session:
        store = SqlAlchemyStateStore(session)
        failed = await store.list_entries(status=CrmSyncStatusEnum.FAILED)
        everything = await store.list_entries()
        rows = (await session.execute(select(CrmSyncQueueEntry))).scalars().all()

    assert len(failed) == 1
    assert len(everything) == len(rows) == 2
