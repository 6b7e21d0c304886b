"""Test settlement: release with fee split, refunds, at-most-once guarantees."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlmodel import select

from gigledger.alerts import list_alerts
from gigledger.db_models import (
    AlertKind,
    OutboxEvent,
    OutboxStatus,
    TaskStatus,
    TransactionType,
    WalletTransaction,
    as_utc,
)
from gigledger.errors import (
    AlreadyProcessedError,
    PayoutAccountNotReadyError,
    ProcessorPermanentError,
    StateTransitionError,
    ValidationError,
)
from gigledger.services.outbox import retry_failed
from gigledger.services.settlement import (
    CancellationPolicy,
    compute_refund,
    compute_split,
    get_settlement,
    refund,
    release,
)
from gigledger.services.tasks import cancel_task, complete_task, get_task
from gigledger.services.wallet import get_balance, reconstruct_balance
from tests.conftest import funded_task


async def _rows(session, task_id, type_=None):
    query = select(WalletTransaction).where(WalletTransaction.task_id == task_id)
    if type_ is not None:
        query = query.where(WalletTransaction.type == type_)
    result = await session.execute(query)
    return list(result.scalars().all())


def test_compute_split_ten_percent():
    assert compute_split(10_000, 0.10) == (9_000, 1_000)


@pytest.mark.parametrize("amount", [1, 5, 15, 999, 1_001, 123_457])
def test_compute_split_sums_to_amount(amount):
    hunter, fee = compute_split(amount, 0.10)
    assert hunter + fee == amount
    assert hunter >= 0 and fee >= 0


def test_compute_split_rounds_half_up():
    assert compute_split(5, 0.10) == (4, 1)
    assert compute_split(15, 0.10) == (13, 2)


def test_compute_split_rejects_bad_input():
    with pytest.raises(ValidationError):
        compute_split(0, 0.1)
    with pytest.raises(ValidationError):
        compute_split(100, 1.5)


def test_compute_refund_retention():
    assert compute_refund(10_000, CancellationPolicy(0.5)) == (5_000, 5_000)
    assert compute_refund(10_000, CancellationPolicy.full_refund()) == (10_000, 0)


def test_policy_rate_is_bounded():
    with pytest.raises(ValidationError):
        CancellationPolicy(-0.1)


@pytest.mark.asyncio
async def test_release_splits_and_completes_task(session, worker, processor, notifier):
    task = await funded_task(session, amount_cents=10_000)

    result = await complete_task(session, task.id, "poster")
    assert result.status == "pending"
    assert (result.hunter_amount_cents, result.platform_fee_cents) == (9_000, 1_000)
    assert (await get_task(session, task.id)).status == TaskStatus.in_progress

    assert await worker.run_once() == 1

    assert (await get_task(session, task.id)).status == TaskStatus.completed
    assert await get_balance(session, "hunter") == 9_000
    assert await get_balance(session, "platform") == 1_000
    assert await get_balance(session, "poster") == 0
    [release_row] = await _rows(session, task.id, TransactionType.release)
    [fee_row] = await _rows(session, task.id, TransactionType.platform_fee)
    assert release_row.amount_cents == 9_000
    assert fee_row.user_id == "platform"
    assert processor.effective("capture") == 1
    assert processor.effective("transfer") == 1
    assert list(processor.transfers.values()) == [("acct_hunter", 9_000)]
    assert ("hunter", "release_completed") in [(u, e) for u, e, _ in notifier.sent]


@pytest.mark.asyncio
async def test_release_twice_returns_prior_result(session, worker, processor):
    task = await funded_task(session)
    await complete_task(session, task.id, "poster")
    await worker.run_once()

    with pytest.raises(AlreadyProcessedError) as exc:
        await release(session, task.id)
    assert exc.value.prior.status == "completed"
    assert exc.value.prior.hunter_amount_cents == 9_000

    again = await complete_task(session, task.id, "poster")
    assert again.status == "completed"
    assert await worker.run_once() == 0
    assert processor.effective("capture") == 1
    assert len(await _rows(session, task.id, TransactionType.release)) == 1


@pytest.mark.asyncio
async def test_duplicate_complete_while_pending_queues_one_event(session):
    task = await funded_task(session)
    first = await complete_task(session, task.id, "poster")
    second = await complete_task(session, task.id, "poster")

    assert second.outbox_event_id == first.outbox_event_id
    result = await session.execute(select(OutboxEvent).where(OutboxEvent.task_id == task.id))
    assert len(result.scalars().all()) == 1


@pytest.mark.asyncio
async def test_only_poster_can_complete(session):
    task = await funded_task(session)
    with pytest.raises(ValidationError):
        await complete_task(session, task.id, "hunter")


@pytest.mark.asyncio
async def test_refund_after_release_is_rejected(session, worker):
    task = await funded_task(session)
    await complete_task(session, task.id, "poster")
    await worker.run_once()

    with pytest.raises(StateTransitionError):
        await refund(session, task.id, CancellationPolicy.full_refund())
    assert await _rows(session, task.id, TransactionType.refund) == []
    assert (await get_task(session, task.id)).status == TaskStatus.completed


@pytest.mark.asyncio
async def test_refund_while_release_pending_is_rejected(session, worker):
    task = await funded_task(session)
    await complete_task(session, task.id, "poster")

    with pytest.raises(StateTransitionError):
        await cancel_task(session, task.id, "poster")
    assert (await get_task(session, task.id)).status == TaskStatus.in_progress

    await worker.run_once()
    assert (await get_task(session, task.id)).status == TaskStatus.completed
    assert await _rows(session, task.id, TransactionType.refund) == []


@pytest.mark.asyncio
async def test_hunter_cancel_refunds_in_full(session, worker, notifier):
    task = await funded_task(session, amount_cents=10_000)

    pending = await cancel_task(session, task.id, "hunter")
    assert pending.status == "pending"
    assert pending.refund_amount_cents == 10_000
    assert (await get_task(session, task.id)).status == TaskStatus.cancellation_requested
    assert (await get_settlement(session, task.id)).status == "pending"

    await worker.run_once()

    assert (await get_task(session, task.id)).status == TaskStatus.cancelled
    assert await get_balance(session, "poster") == 10_000
    assert await _rows(session, task.id, TransactionType.platform_fee) == []
    assert (await get_settlement(session, task.id)).status == "completed"
    assert ("poster", "refund_completed") in [(u, e) for u, e, _ in notifier.sent]


@pytest.mark.asyncio
async def test_late_poster_cancel_retains_fee(session, worker):
    task = await funded_task(session, amount_cents=10_000)
    later = as_utc(task.accepted_at) + timedelta(hours=3)

    pending = await cancel_task(session, task.id, "poster", now=later)
    assert (pending.refund_amount_cents, pending.retained_fee_cents) == (5_000, 5_000)

    await worker.run_once()
    assert await get_balance(session, "poster") == 5_000
    assert await get_balance(session, "platform") == 5_000
    [fee_row] = await _rows(session, task.id, TransactionType.platform_fee)
    assert fee_row.amount_cents == 5_000


@pytest.mark.asyncio
async def test_refund_twice_is_already_processed(session, worker, processor):
    task = await funded_task(session)
    await cancel_task(session, task.id, "hunter")
    await worker.run_once()

    with pytest.raises(AlreadyProcessedError) as exc:
        await refund(session, task.id, CancellationPolicy.full_refund())
    assert exc.value.prior.kind == "refund"
    assert processor.effective("refund") == 1


@pytest.mark.asyncio
async def test_payout_account_not_ready_blocks_release(session, payout_accounts):
    payout_accounts.blocked.add("hunter")
    task = await funded_task(session)

    with pytest.raises(PayoutAccountNotReadyError) as exc:
        await complete_task(session, task.id, "poster")
    assert "payout account" in exc.value.remediation
    assert (await get_task(session, task.id)).status == TaskStatus.in_progress
    assert await get_settlement(session, task.id) is None


@pytest.mark.asyncio
async def test_release_failed_then_requeued_after_fix(session, worker, payout_accounts):
    task = await funded_task(session)
    await complete_task(session, task.id, "poster")
    payout_accounts.blocked.add("hunter")

    await worker.run_once()
    failed = await get_settlement(session, task.id)
    assert failed.status == "failed"
    [alert] = await list_alerts(session)
    assert alert.kind == AlertKind.permanent_failure

    payout_accounts.register("hunter", "acct_fixed")
    requeued = await complete_task(session, task.id, "poster")
    assert requeued.status == "pending"
    await worker.run_once()
    assert (await get_task(session, task.id)).status == TaskStatus.completed


@pytest.mark.asyncio
async def test_transfer_rejected_after_capture_needs_reconciliation(session, worker, processor):
    task = await funded_task(session)
    await complete_task(session, task.id, "poster")
    processor.fail_next("transfer", ProcessorPermanentError("payee closed"))

    await worker.run_once()

    [alert] = await list_alerts(session)
    assert alert.kind == AlertKind.reconciliation
    result = await session.execute(select(OutboxEvent).execution_options(populate_existing=True))
    event = result.scalar_one()
    assert event.status == OutboxStatus.failed
    assert event.payload["capture_ref"]

    await retry_failed(session, event.id)
    await worker.run_once()
    assert processor.effective("capture") == 1
    assert processor.effective("transfer") == 1
    assert (await get_task(session, task.id)).status == TaskStatus.completed


@pytest.mark.asyncio
async def test_concurrent_complete_and_cancel_settle_once(db, worker):
    async with db() as s:
        task = await funded_task(s, amount_cents=10_000)

    async def complete():
        async with db() as s:
            return await complete_task(s, task.id, "poster")

    async def cancel():
        async with db() as s:
            return await cancel_task(s, task.id, "hunter")

    outcomes = await asyncio.gather(complete(), cancel(), return_exceptions=True)
    errors = [o for o in outcomes if isinstance(o, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], StateTransitionError)

    await worker.run_once()
    async with db() as s:
        released = await _rows(s, task.id, TransactionType.release)
        refunded = await _rows(s, task.id, TransactionType.refund)
        assert len(released) + len(refunded) == 1
        for user in ("poster", "hunter", "platform"):
            assert await reconstruct_balance(s, user) == await get_balance(s, user)
