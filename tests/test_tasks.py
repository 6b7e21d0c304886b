"""Test the task lifecycle: accept races, failed holds, cancellation policy."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from gigledger.background import run_maintenance
from gigledger.db_models import Task, TaskStatus, TransactionType
from gigledger.errors import (
    InsufficientFundsError,
    ProcessorTransientError,
    StateTransitionError,
    ValidationError,
)
from gigledger.ids import escrow_id
from gigledger.services.escrow import create_hold, get_hold
from gigledger.services.tasks import (
    accept_task,
    cancel_task,
    cancellation_policy,
    create_task,
    get_task,
)
from gigledger.services.wallet import deposit, get_balance, reconstruct_balance
from gigledger.state_machine import TaskAction, apply_transition
from tests.conftest import funded_task


@pytest.mark.asyncio
async def test_create_task_is_open(session):
    task = await create_task(session, "poster", 2_500)
    assert task.status == TaskStatus.open
    assert task.hunter_id is None
    assert task.escrow_reference_id is None
    assert task.currency == "usd"


@pytest.mark.asyncio
async def test_create_task_validation(session):
    with pytest.raises(ValidationError):
        await create_task(session, "poster", 0)
    with pytest.raises(ValidationError):
        await create_task(session, "poster", 100, currency="eur")
    with pytest.raises(ValidationError):
        await create_task(session, "", 100)


@pytest.mark.asyncio
async def test_accept_funds_task(session, processor):
    task = await funded_task(session, amount_cents=4_000)
    assert task.status == TaskStatus.in_progress
    assert task.hunter_id == "hunter"
    assert task.escrow_reference_id.startswith("es_")
    assert task.hold_ref in processor.holds
    assert task.accepted_at is not None
    assert await get_balance(session, "poster") == 0


@pytest.mark.asyncio
async def test_poster_cannot_accept_own_task(session):
    await deposit(session, "poster", 1_000)
    task = await create_task(session, "poster", 1_000)
    with pytest.raises(ValidationError):
        await accept_task(session, task.id, "poster")


@pytest.mark.asyncio
async def test_accept_twice_is_rejected(session):
    task = await funded_task(session)
    with pytest.raises(StateTransitionError) as exc:
        await accept_task(session, task.id, "other-hunter")
    assert exc.value.current == "in_progress"


@pytest.mark.asyncio
async def test_concurrent_accepts_have_one_winner(db, processor):
    async with db() as s:
        await deposit(s, "poster", 10_000)
        task = await create_task(s, "poster", 10_000)

    async def accept(hunter):
        async with db() as s:
            return await accept_task(s, task.id, hunter)

    outcomes = await asyncio.gather(accept("h1"), accept("h2"), return_exceptions=True)
    winners = [o for o in outcomes if isinstance(o, Task)]
    losers = [o for o in outcomes if isinstance(o, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], StateTransitionError)
    assert winners[0].status == TaskStatus.in_progress
    assert processor.effective("authorize") == 1
    async with db() as s:
        assert await get_balance(s, "poster") == 0


@pytest.mark.asyncio
async def test_insufficient_funds_reopens_task(session):
    await deposit(session, "poster", 100)
    task = await create_task(session, "poster", 10_000)

    with pytest.raises(InsufficientFundsError):
        await accept_task(session, task.id, "hunter")

    task = await get_task(session, task.id)
    assert task.status == TaskStatus.open
    assert task.hunter_id is None
    assert task.escrow_reference_id is None

    await deposit(session, "poster", 9_900)
    task = await accept_task(session, task.id, "hunter2")
    assert task.status == TaskStatus.in_progress


@pytest.mark.asyncio
async def test_processor_outage_reopens_task(session, processor):
    await deposit(session, "poster", 1_000)
    task = await create_task(session, "poster", 1_000)
    processor.fail_next("authorize", ProcessorTransientError("gateway down"))

    with pytest.raises(ProcessorTransientError):
        await accept_task(session, task.id, "hunter")
    assert (await get_task(session, task.id)).status == TaskStatus.open
    assert await get_balance(session, "poster") == 1_000


@pytest.mark.asyncio
async def test_cancelled_accept_request_reopens_task(db, processor):
    async with db() as s:
        await deposit(s, "poster", 2_000)
        task = await create_task(s, "poster", 2_000)
    processor.delay_seconds = 0.5

    async def accept():
        async with db() as s:
            return await accept_task(s, task.id, "hunter")

    accepting = asyncio.create_task(accept())
    async with db() as s:
        for _ in range(100):
            if (await get_task(s, task.id)).status == TaskStatus.pending_escrow:
                break
            await asyncio.sleep(0.01)
    accepting.cancel()
    with pytest.raises(asyncio.CancelledError):
        await accepting

    processor.delay_seconds = 0
    async with db() as s:
        reopened = await get_task(s, task.id)
        assert reopened.status == TaskStatus.open
        assert reopened.hunter_id is None
        assert await get_hold(s, task.id) is None
        assert await get_balance(s, "poster") == 2_000

        accepted = await accept_task(s, task.id, "other-hunter")
        assert accepted.status == TaskStatus.in_progress


@pytest.mark.asyncio
async def test_cancel_unfunded_task_is_immediate(db, processor, worker):
    async with db() as s:
        await deposit(s, "poster", 5_000)
        task = await create_task(s, "poster", 5_000)
    processor.delay_seconds = 0.3

    async def accept():
        async with db() as s:
            return await accept_task(s, task.id, "hunter")

    accepting = asyncio.create_task(accept())
    async with db() as s:
        for _ in range(100):
            if (await get_task(s, task.id)).status == TaskStatus.pending_escrow:
                break
            await asyncio.sleep(0.01)
        assert await cancel_task(s, task.id, "poster") is None
        assert (await get_task(s, task.id)).status == TaskStatus.cancelled

    # The hold authorized meanwhile is handed back in full
    with pytest.raises(StateTransitionError):
        await accepting
    processor.delay_seconds = 0
    await worker.run_once()

    async with db() as s:
        assert (await get_task(s, task.id)).status == TaskStatus.cancelled
        assert await get_balance(s, "poster") == 5_000
        assert await reconstruct_balance(s, "poster") == 5_000


@pytest.mark.asyncio
async def test_cancel_requires_participant(session):
    task = await funded_task(session)
    with pytest.raises(ValidationError):
        await cancel_task(session, task.id, "stranger")


@pytest.mark.asyncio
async def test_cancel_open_task_is_rejected(session):
    task = await create_task(session, "poster", 1_000)
    with pytest.raises(StateTransitionError):
        await cancel_task(session, task.id, "poster")


@pytest.mark.asyncio
async def test_cancel_twice_returns_pending_refund(session, worker):
    task = await funded_task(session)
    first = await cancel_task(session, task.id, "hunter")
    assert first.status == "pending"

    again = await cancel_task(session, task.id, "poster")
    assert again.status == "pending"
    assert again.outbox_event_id == first.outbox_event_id

    await worker.run_once()
    settled = await cancel_task(session, task.id, "hunter")
    assert settled.kind == "refund"
    assert settled.status == "completed"
    assert settled.refund_amount_cents == 10_000
    assert (await get_task(session, task.id)).status == TaskStatus.cancelled
    assert await get_balance(session, "poster") == 10_000


@pytest.mark.asyncio
async def test_cancel_twice_unfunded_task_is_rejected(session):
    task = await create_task(session, "poster", 1_000)
    await apply_transition(session, task.id, TaskAction.accept, hunter_id="hunter")
    await session.commit()

    assert await cancel_task(session, task.id, "poster") is None
    with pytest.raises(StateTransitionError):
        await cancel_task(session, task.id, "poster")


def _task(status=TaskStatus.in_progress, accepted_minutes_ago=120):
    return Task(
        id="tk_1",
        poster_id="poster",
        hunter_id="hunter",
        amount_cents=1_000,
        status=status,
        accepted_at=datetime.now(UTC) - timedelta(minutes=accepted_minutes_ago),
    )


def test_policy_full_refund_before_work_starts():
    policy = cancellation_policy(_task(TaskStatus.pending_escrow), "poster", datetime.now(UTC))
    assert policy.fee_retention_rate == 0.0


def test_policy_full_refund_when_hunter_cancels():
    assert cancellation_policy(_task(), "hunter", datetime.now(UTC)).fee_retention_rate == 0.0


def test_policy_full_refund_within_grace_window():
    task = _task(accepted_minutes_ago=30)
    assert cancellation_policy(task, "poster", datetime.now(UTC)).fee_retention_rate == 0.0


def test_policy_retains_fee_after_work_started():
    policy = cancellation_policy(_task(), "poster", datetime.now(UTC))
    assert policy.fee_retention_rate == 0.5
    assert policy.reason == "cancelled after work started"


@pytest.mark.asyncio
async def test_maintenance_recovers_stalled_acceptance(db):
    async with db() as s:
        await deposit(s, "poster", 3_000)
        task = await create_task(s, "poster", 3_000)
        ref = escrow_id()
        await apply_transition(
            s, task.id, TaskAction.accept, hunter_id="hunter", escrow_reference_id=ref
        )
        await s.commit()
        await create_hold(s, task.id, 3_000, "poster", escrow_reference_id=ref)
        # Process died here: the task never reached in_progress

    stats = await run_maintenance(db, now=datetime.now(UTC) + timedelta(hours=1))
    assert stats["recovered"] == 1

    async with db() as s:
        task = await get_task(s, task.id)
        hold = await get_hold(s, task.id)
        assert task.status == TaskStatus.in_progress
        assert task.hold_ref == hold.external_reference_id
        assert hold.type == TransactionType.escrow_hold
