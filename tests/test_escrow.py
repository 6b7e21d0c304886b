"""Test escrow holds: idempotency, funds checks, compensation."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from gigledger.alerts import list_alerts
from gigledger.db_models import AlertKind, TransactionType
from gigledger.errors import (
    InsufficientFundsError,
    ProcessorPermanentError,
    ProcessorTransientError,
    ValidationError,
)
from gigledger.services import escrow
from gigledger.services.escrow import create_hold, get_hold
from gigledger.services.tasks import create_task
from gigledger.services.wallet import deposit, get_balance


async def _task(session, amount=5_000, balance=5_000):
    await deposit(session, "poster", balance)
    return await create_task(session, "poster", amount)


@pytest.mark.asyncio
async def test_create_hold_debits_poster_and_records_row(session, processor, notifier):
    task = await _task(session)
    hold = await create_hold(session, task.id, 5_000, "poster")

    assert hold.replayed is False
    assert hold.hold_ref in processor.holds
    assert await get_balance(session, "poster") == 0
    row = await get_hold(session, task.id)
    assert row.type == TransactionType.escrow_hold
    assert row.amount_cents == -5_000
    assert row.external_reference_id == hold.hold_ref
    assert ("poster", "hold_created") in [(u, e) for u, e, _ in notifier.sent]


@pytest.mark.asyncio
async def test_create_hold_twice_returns_same_hold(session, processor):
    task = await _task(session, balance=20_000)
    first = await create_hold(session, task.id, 5_000, "poster")
    second = await create_hold(session, task.id, 5_000, "poster")

    assert second.replayed is True
    assert second.hold_ref == first.hold_ref
    assert second.transaction_id == first.transaction_id
    assert processor.effective("authorize") == 1
    assert await get_balance(session, "poster") == 15_000


@pytest.mark.asyncio
async def test_insufficient_funds_never_authorizes(session, processor):
    task = await _task(session, amount=5_000, balance=4_999)
    with pytest.raises(InsufficientFundsError):
        await create_hold(session, task.id, 5_000, "poster")
    assert processor.calls == []
    assert await get_hold(session, task.id) is None


@pytest.mark.asyncio
async def test_invalid_inputs_rejected(session):
    task = await _task(session)
    with pytest.raises(ValidationError):
        await create_hold(session, task.id, 0, "poster")
    with pytest.raises(ValidationError):
        await create_hold(session, task.id, 100, "")


@pytest.mark.asyncio
async def test_processor_failure_leaves_nothing_behind(session, processor):
    task = await _task(session)
    processor.fail_next("authorize", ProcessorTransientError("gateway down"))
    with pytest.raises(ProcessorTransientError):
        await create_hold(session, task.id, 5_000, "poster")
    assert await get_hold(session, task.id) is None
    assert await get_balance(session, "poster") == 5_000


@pytest.mark.asyncio
async def test_failed_ledger_write_voids_authorization(session, processor):
    task = await _task(session)

    async def broken_adjust(*args, **kwargs):
        raise RuntimeError("disk full")

    with patch.object(escrow, "adjust_balance", broken_adjust):
        with pytest.raises(RuntimeError):
            await create_hold(session, task.id, 5_000, "poster")

    assert await get_hold(session, task.id) is None
    [hold] = processor.holds.values()
    assert hold.closed is True
    assert hold.refunded_cents == 5_000
    assert await get_balance(session, "poster") == 5_000


@pytest.mark.asyncio
async def test_unvoidable_authorization_raises_reconciliation_alert(session, processor):
    task = await _task(session)
    processor.fail_next("refund", ProcessorPermanentError("hold locked"))

    async def broken_adjust(*args, **kwargs):
        raise RuntimeError("disk full")

    with patch.object(escrow, "adjust_balance", broken_adjust):
        with pytest.raises(RuntimeError):
            await create_hold(session, task.id, 5_000, "poster")

    [alert] = await list_alerts(session)
    assert alert.kind == AlertKind.reconciliation
    assert alert.task_id == task.id
