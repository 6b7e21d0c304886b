"""Task lifecycle: accept, complete and cancel, driving escrow and settlement.

Every status change is a compare-and-set through `apply_transition`; the
controller never writes `Task.status` directly. Transactions are committed
before each processor call so no database lock is held across network I/O.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from gigledger.config import settings
from gigledger.db_models import Task, TaskStatus, as_utc
from gigledger.errors import (
    AlreadyProcessedError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from gigledger.ids import escrow_id
from gigledger.ids import task_id as make_task_id
from gigledger.services.escrow import create_hold, get_hold
from gigledger.services.settlement import (
    CancellationPolicy,
    SettlementResult,
    get_settlement,
    refund,
    release,
)
from gigledger.state_machine import TaskAction, apply_transition, require_transition

logger = logging.getLogger("gigledger.tasks")


async def create_task(
    session: AsyncSession,
    poster_id: str,
    amount_cents: int,
    currency: str | None = None,
) -> Task:
    if not poster_id:
        raise ValidationError("poster_id is required")
    if amount_cents <= 0:
        raise ValidationError("amount_cents must be positive")
    currency = (currency or settings.currency).lower()
    if currency != settings.currency:
        raise ValidationError(f"Only {settings.currency} tasks are supported")

    task = Task(
        id=make_task_id(), poster_id=poster_id, amount_cents=amount_cents, currency=currency
    )
    session.add(task)
    await session.commit()
    logger.info("Task %s created by %s for %d cents", task.id, poster_id, amount_cents)
    return task


async def get_task(session: AsyncSession, task_id: str) -> Task:
    task = await session.get(Task, task_id, populate_existing=True)
    if task is None:
        raise NotFoundError(f"Task {task_id} not found")
    return task


def task_to_dict(task: Task) -> dict:
    return {
        "id": task.id,
        "poster_id": task.poster_id,
        "hunter_id": task.hunter_id,
        "amount_cents": task.amount_cents,
        "currency": task.currency,
        "status": task.status.value if hasattr(task.status, "value") else task.status,
        "escrow_reference_id": task.escrow_reference_id,
        "accepted_at": task.accepted_at.isoformat() if task.accepted_at else None,
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "updated_at": task.updated_at.isoformat() if task.updated_at else None,
    }


async def accept_task(session: AsyncSession, task_id: str, hunter_id: str) -> Task:
    """Claim an open task for `hunter_id` and fund it with an escrow hold.

    Of several concurrent accepts exactly one wins the `open -> pending_escrow`
    compare-and-set; the others get StateTransitionError without touching the
    processor. If the hold cannot be created the task goes back to `open`.
    """
    task = await get_task(session, task_id)
    if not hunter_id:
        raise ValidationError("hunter_id is required")
    if hunter_id == task.poster_id:
        raise ValidationError("A poster cannot accept their own task")
    require_transition(task.status, TaskAction.accept)

    escrow_ref = escrow_id()
    claimed = await apply_transition(
        session, task_id, TaskAction.accept, hunter_id=hunter_id, escrow_reference_id=escrow_ref
    )
    if not claimed:
        await session.rollback()
        task = await get_task(session, task_id)
        raise StateTransitionError(
            f"Task {task_id} was already accepted", current=task.status.value
        )
    await session.commit()

    try:
        hold = await create_hold(
            session, task_id, task.amount_cents, task.poster_id, escrow_reference_id=escrow_ref
        )
    except BaseException:
        # Cancellation included: no task stays in pending_escrow without a hold.
        await session.rollback()
        if await get_hold(session, task_id) is None:
            reverted = await apply_transition(
                session, task_id, TaskAction.hold_failed, hunter_id=None, escrow_reference_id=None
            )
            await session.commit()
            if reverted:
                logger.warning("Hold for task %s failed; task reopened", task_id)
        raise

    funded = await apply_transition(
        session,
        task_id,
        TaskAction.hold_recorded,
        hold_ref=hold.hold_ref,
        accepted_at=datetime.now(UTC),
    )
    if not funded:
        await session.rollback()
        task = await get_task(session, task_id)
        if task.status == TaskStatus.cancelled:
            # Cancelled while the hold was being authorized: give the money back.
            await refund(
                session,
                task_id,
                CancellationPolicy.full_refund("cancelled during acceptance"),
                transition=False,
            )
        raise StateTransitionError(
            f"Task {task_id} was cancelled while being accepted", current=task.status.value
        )

    await session.commit()
    logger.info("Task %s accepted by %s (hold %s)", task_id, hunter_id, hold.hold_ref)
    return await get_task(session, task_id)


async def complete_task(session: AsyncSession, task_id: str, caller_id: str) -> SettlementResult:
    """Mark work done and queue the release. Only the poster may complete.

    The task itself becomes `completed` once the release rows are recorded by
    the outbox worker; until then the returned result is `pending`.
    """
    task = await get_task(session, task_id)
    if caller_id != task.poster_id:
        raise ValidationError("Only the poster can complete a task")

    if task.status == TaskStatus.completed:
        settled = await get_settlement(session, task_id)
        if settled is not None:
            return settled
    require_transition(task.status, TaskAction.release_recorded)

    try:
        return await release(session, task_id)
    except AlreadyProcessedError as e:
        return e.prior


def cancellation_policy(task: Task, initiator_id: str, now: datetime) -> CancellationPolicy:
    """Decide how much of the hold the platform keeps on cancellation.

    Nothing is kept before work starts or when the hunter backs out. A poster
    cancelling inside the grace window after acceptance also gets everything back.
    """
    if task.status == TaskStatus.pending_escrow:
        return CancellationPolicy.full_refund("work not started")
    if initiator_id == task.hunter_id:
        return CancellationPolicy.full_refund("cancelled by hunter")
    accepted_at = as_utc(task.accepted_at)
    if accepted_at is not None and now - accepted_at <= timedelta(
        minutes=settings.cancel_grace_minutes
    ):
        return CancellationPolicy.full_refund("within grace window")
    return CancellationPolicy(
        fee_retention_rate=settings.cancel_fee_retention_rate,
        reason="cancelled after work started",
    )


async def cancel_task(
    session: AsyncSession,
    task_id: str,
    initiator_id: str,
    now: datetime | None = None,
) -> SettlementResult | None:
    """Cancel a task. Returns the pending refund, or None if nothing was held.

    Cancelling again returns the refund already recorded or queued.
    """
    now = now or datetime.now(UTC)
    task = await get_task(session, task_id)
    if initiator_id not in (task.poster_id, task.hunter_id):
        raise ValidationError("Only the poster or the hunter can cancel a task")

    if task.status in (TaskStatus.cancellation_requested, TaskStatus.cancelled):
        settled = await get_settlement(session, task_id)
        if settled is not None:
            return settled
    require_transition(task.status, TaskAction.request_cancel)

    hold = await get_hold(session, task_id)
    if hold is None:
        if await apply_transition(session, task_id, TaskAction.cancel_unfunded, now=now):
            await session.commit()
            logger.info("Task %s cancelled before funding by %s", task_id, initiator_id)
            return None
        await session.rollback()
        hold = await get_hold(session, task_id)
        if hold is None:
            task = await get_task(session, task_id)
            raise StateTransitionError(
                f"Cannot cancel a task that is {task.status.value}", current=task.status.value
            )
        task = await get_task(session, task_id)

    policy = cancellation_policy(task, initiator_id, now)
    try:
        result = await refund(session, task_id, policy)
    except AlreadyProcessedError as e:
        return e.prior
    logger.info("Task %s cancellation by %s: %s", task_id, initiator_id, policy.reason)
    return result
