"""Settlement: release (capture + split transfer) and refund of a task's hold.

Neither operation calls the processor inline. Each records one settlement
intent in the outbox (dedupe key `settlement:{task_id}`, so a task gets a
release or a refund, never both) and the outbox worker runs the handler.
Handlers re-check the ledger before acting; the partial unique index on
wallet_transactions(task_id, type) is the structural backstop.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from gigledger.collaborators import defer_notify, registry
from gigledger.config import settings
from gigledger.db_models import (
    AlertKind,
    OutboxEvent,
    OutboxStatus,
    Task,
    TaskStatus,
    TransactionType,
    WalletTransaction,
)
from gigledger.errors import (
    AlreadyProcessedError,
    NotFoundError,
    PayoutAccountNotReadyError,
    ProcessorPermanentError,
    StateTransitionError,
    ValidationError,
)
from gigledger.ids import idempotency_token
from gigledger.processor import call_with_timeout
from gigledger.services.escrow import get_hold
from gigledger.services.outbox import enqueue, get_event_by_key, retry_failed
from gigledger.services.wallet import adjust_balance, record_transaction
from gigledger.state_machine import TaskAction, apply_transition

logger = logging.getLogger("gigledger.settlement")

RELEASE_EVENT = "settlement.release"
REFUND_EVENT = "settlement.refund"


class CapturedFundsStuckError(ProcessorPermanentError):
    """Capture went through but the transfer to the hunter was rejected."""

    code = "transfer_rejected_after_capture"
    alert_kind = AlertKind.reconciliation
    default_remediation = (
        "Funds were captured but not paid out. Reconcile the hunter's payout manually "
        "or fix the payout account and retry the event."
    )


@dataclass(frozen=True)
class CancellationPolicy:
    fee_retention_rate: float
    reason: str = ""

    def __post_init__(self) -> None:
        if not 0.0 <= self.fee_retention_rate <= 1.0:
            raise ValidationError("fee_retention_rate must be between 0 and 1")

    @classmethod
    def full_refund(cls, reason: str = "full refund") -> CancellationPolicy:
        return cls(fee_retention_rate=0.0, reason=reason)


@dataclass
class SettlementResult:
    task_id: str
    kind: str  # release | refund
    status: str  # pending | completed | failed
    amount_cents: int
    hunter_amount_cents: int | None = None
    platform_fee_cents: int | None = None
    refund_amount_cents: int | None = None
    retained_fee_cents: int | None = None
    outbox_event_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


def settlement_key(task_id: str) -> str:
    return f"settlement:{task_id}"


def _round_cents(amount_cents: int, rate: float) -> int:
    value = Decimal(amount_cents) * Decimal(str(rate))
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def compute_split(amount_cents: int, fee_rate: float) -> tuple[int, int]:
    """Return (hunter_amount, platform_fee); they always sum to amount_cents."""
    if amount_cents <= 0:
        raise ValidationError("Amount must be positive")
    if not 0.0 <= fee_rate <= 1.0:
        raise ValidationError("Fee rate must be between 0 and 1")
    platform_fee = _round_cents(amount_cents, fee_rate)
    return amount_cents - platform_fee, platform_fee


def compute_refund(amount_cents: int, policy: CancellationPolicy) -> tuple[int, int]:
    """Return (refund_amount, retained_fee); they always sum to amount_cents."""
    retained = _round_cents(amount_cents, policy.fee_retention_rate)
    return amount_cents - retained, retained


def default_fee_rate() -> float:
    return settings.platform_fee_percent / 100.0


async def _settlement_rows(
    session: AsyncSession, task_id: str
) -> dict[TransactionType, WalletTransaction]:
    result = await session.execute(
        select(WalletTransaction).where(
            WalletTransaction.task_id == task_id,
            WalletTransaction.type.in_(
                [TransactionType.release, TransactionType.refund, TransactionType.platform_fee]
            ),
        )
    )
    return {row.type: row for row in result.scalars().all()}


def _completed_result(
    task_id: str, hold_amount: int, rows: dict[TransactionType, WalletTransaction]
) -> SettlementResult:
    fee_row = rows.get(TransactionType.platform_fee)
    fee = fee_row.amount_cents if fee_row else 0
    if TransactionType.release in rows:
        return SettlementResult(
            task_id=task_id,
            kind="release",
            status="completed",
            amount_cents=hold_amount,
            hunter_amount_cents=rows[TransactionType.release].amount_cents,
            platform_fee_cents=fee,
        )
    return SettlementResult(
        task_id=task_id,
        kind="refund",
        status="completed",
        amount_cents=hold_amount,
        refund_amount_cents=rows[TransactionType.refund].amount_cents,
        retained_fee_cents=fee,
    )


def _event_result(event: OutboxEvent) -> SettlementResult:
    p = event.payload
    status = {
        OutboxStatus.completed: "completed",
        OutboxStatus.failed: "failed",
    }.get(event.status, "pending")
    kind = "release" if event.event_type == RELEASE_EVENT else "refund"
    return SettlementResult(
        task_id=p["task_id"],
        kind=kind,
        status=status,
        amount_cents=p["amount_cents"],
        hunter_amount_cents=p.get("hunter_amount_cents"),
        platform_fee_cents=p.get("platform_fee_cents"),
        refund_amount_cents=p.get("refund_amount_cents"),
        retained_fee_cents=p.get("retained_fee_cents"),
        outbox_event_id=event.id,
        error=event.last_error if event.status == OutboxStatus.failed else None,
    )


async def get_settlement(session: AsyncSession, task_id: str) -> SettlementResult | None:
    """Authoritative settlement view: the ledger first, the outbox intent second."""
    hold = await get_hold(session, task_id)
    if hold is None:
        return None
    rows = await _settlement_rows(session, task_id)
    if TransactionType.release in rows or TransactionType.refund in rows:
        return _completed_result(task_id, -hold.amount_cents, rows)
    event = await get_event_by_key(session, settlement_key(task_id))
    if event is not None:
        return _event_result(event)
    return None


async def _load_task(session: AsyncSession, task_id: str) -> Task:
    task = await session.get(Task, task_id, populate_existing=True)
    if task is None:
        raise NotFoundError(f"Task {task_id} not found")
    return task


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------


async def release(
    session: AsyncSession, task_id: str, fee_rate: float | None = None
) -> SettlementResult:
    """Queue the release of a task's hold to its hunter.

    Raises AlreadyProcessedError (with `.prior`) if the release is already in
    the ledger. A second call while the release is in flight returns the same
    pending result; a call after a failed release requeues it.
    """
    task = await _load_task(session, task_id)
    hold = await get_hold(session, task_id)
    if hold is None:
        raise StateTransitionError(f"Task {task_id} has no funded hold", current=task.status.value)
    hold_amount = -hold.amount_cents

    rows = await _settlement_rows(session, task_id)
    if TransactionType.release in rows:
        raise AlreadyProcessedError(
            f"Task {task_id} was already released",
            prior=_completed_result(task_id, hold_amount, rows),
        )
    if TransactionType.refund in rows:
        raise StateTransitionError(f"Task {task_id} was refunded", current=task.status.value)

    existing = await get_event_by_key(session, settlement_key(task_id))
    if existing is not None:
        if existing.event_type != RELEASE_EVENT:
            raise StateTransitionError(
                f"A refund is already in progress for task {task_id}", current=task.status.value
            )
        if existing.status == OutboxStatus.failed:
            await _ensure_payable(task.hunter_id)
            existing = await retry_failed(session, existing.id)
        return _event_result(existing)

    if task.status != TaskStatus.in_progress:
        raise StateTransitionError(
            f"Cannot release a task that is {task.status.value}", current=task.status.value
        )
    await _ensure_payable(task.hunter_id)

    rate = default_fee_rate() if fee_rate is None else fee_rate
    hunter_amount, platform_fee = compute_split(hold_amount, rate)
    event = enqueue(
        session,
        RELEASE_EVENT,
        {
            "task_id": task_id,
            "hold_ref": hold.external_reference_id,
            "poster_id": task.poster_id,
            "hunter_id": task.hunter_id,
            "amount_cents": hold_amount,
            "hunter_amount_cents": hunter_amount,
            "platform_fee_cents": platform_fee,
            "notify_user_id": task.hunter_id,
        },
        dedupe_key=settlement_key(task_id),
        task_id=task_id,
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await get_event_by_key(session, settlement_key(task_id))
        if existing is None or existing.event_type != RELEASE_EVENT:
            raise StateTransitionError(f"Task {task_id} is already being settled") from None
        return _event_result(existing)

    logger.info(
        "Release queued for task %s: hunter=%d fee=%d (event %s)",
        task_id,
        hunter_amount,
        platform_fee,
        event.id,
    )
    return _event_result(event)


async def _ensure_payable(hunter_id: str | None) -> None:
    if not hunter_id or not await registry.payout_accounts.is_payable(hunter_id):
        raise PayoutAccountNotReadyError(f"Hunter {hunter_id} has no payable account")


async def handle_release(session: AsyncSession, event: OutboxEvent) -> None:
    p = event.payload
    task_id = p["task_id"]

    rows = await _settlement_rows(session, task_id)
    if TransactionType.release in rows:
        logger.info("Task %s already released, skipping event %s", task_id, event.id)
        return
    if TransactionType.refund in rows:
        raise ProcessorPermanentError(
            f"Task {task_id} was refunded; release aborted",
            remediation="Investigate why a release was queued for a refunded task.",
        )

    processor = registry.processor
    hunter_id = p["hunter_id"]
    capture_ref = p.get("capture_ref")
    if not capture_ref:
        await _ensure_payable(hunter_id)
        capture_ref = await call_with_timeout(
            processor.capture(p["hold_ref"], idempotency_token(task_id, "capture"))
        )
        # Capture is irreversible; checkpoint it so retries go straight to the transfer.
        event.payload = {**p, "capture_ref": capture_ref}
        session.add(event)
        await session.commit()
        logger.info("Captured hold %s for task %s as %s", p["hold_ref"], task_id, capture_ref)

    payee = await registry.payout_accounts.payout_account(hunter_id)
    token = idempotency_token(task_id, "transfer")
    try:
        transfer_ref = await call_with_timeout(
            processor.transfer(payee, p["hunter_amount_cents"], token)
        )
    except ProcessorPermanentError as e:
        raise CapturedFundsStuckError(
            f"Transfer of {p['hunter_amount_cents']} to {hunter_id} rejected after capture "
            f"{capture_ref}: {e}"
        ) from e

    record_transaction(
        session,
        user_id=hunter_id,
        type=TransactionType.release,
        amount_cents=p["hunter_amount_cents"],
        task_id=task_id,
        external_reference_id=transfer_ref,
    )
    await adjust_balance(session, hunter_id, p["hunter_amount_cents"])
    if p["platform_fee_cents"]:
        record_transaction(
            session,
            user_id=settings.platform_account_id,
            type=TransactionType.platform_fee,
            amount_cents=p["platform_fee_cents"],
            task_id=task_id,
            external_reference_id=capture_ref,
        )
        await adjust_balance(session, settings.platform_account_id, p["platform_fee_cents"])

    if not await apply_transition(session, task_id, TaskAction.release_recorded):
        logger.warning("Task %s released but was not in_progress", task_id)

    defer_notify(
        session,
        hunter_id,
        "release_completed",
        task_id=task_id,
        amount_cents=p["hunter_amount_cents"],
        platform_fee_cents=p["platform_fee_cents"],
    )
    defer_notify(session, p.get("poster_id"), "release_completed", task_id=task_id)


# ---------------------------------------------------------------------------
# Refund
# ---------------------------------------------------------------------------


async def refund(
    session: AsyncSession,
    task_id: str,
    policy: CancellationPolicy,
    *,
    transition: bool = True,
) -> SettlementResult:
    """Queue the refund of a task's hold to its poster, minus the retained fee.

    With `transition` the task moves to cancellation_requested in the same
    transaction. Without it the task status is left alone; used to unwind a
    hold that landed on a task cancelled mid-acceptance.
    """
    task = await _load_task(session, task_id)
    if task.status == TaskStatus.completed:
        raise StateTransitionError(f"Task {task_id} is completed", current=task.status.value)

    hold = await get_hold(session, task_id)
    if hold is None:
        raise StateTransitionError(f"Task {task_id} has no funded hold", current=task.status.value)
    hold_amount = -hold.amount_cents

    rows = await _settlement_rows(session, task_id)
    if TransactionType.refund in rows:
        raise AlreadyProcessedError(
            f"Task {task_id} was already refunded",
            prior=_completed_result(task_id, hold_amount, rows),
        )
    if TransactionType.release in rows:
        raise StateTransitionError(f"Task {task_id} was released", current=task.status.value)

    existing = await get_event_by_key(session, settlement_key(task_id))
    if existing is not None:
        if existing.event_type != REFUND_EVENT:
            raise StateTransitionError(
                f"A release is already in progress for task {task_id}", current=task.status.value
            )
        if existing.status == OutboxStatus.failed:
            existing = await retry_failed(session, existing.id)
        return _event_result(existing)

    refund_amount, retained = compute_refund(hold_amount, policy)
    if transition and not await apply_transition(session, task_id, TaskAction.request_cancel):
        await session.rollback()
        task = await _load_task(session, task_id)
        raise StateTransitionError(
            f"Cannot cancel a task that is {task.status.value}", current=task.status.value
        )
    event = enqueue(
        session,
        REFUND_EVENT,
        {
            "task_id": task_id,
            "hold_ref": hold.external_reference_id,
            "poster_id": task.poster_id,
            "amount_cents": hold_amount,
            "refund_amount_cents": refund_amount,
            "retained_fee_cents": retained,
            "reason": policy.reason,
            "notify_user_id": task.poster_id,
        },
        dedupe_key=settlement_key(task_id),
        task_id=task_id,
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await get_event_by_key(session, settlement_key(task_id))
        if existing is None or existing.event_type != REFUND_EVENT:
            raise StateTransitionError(f"Task {task_id} is already being settled") from None
        return _event_result(existing)

    logger.info(
        "Refund queued for task %s: refund=%d retained=%d (%s)",
        task_id,
        refund_amount,
        retained,
        policy.reason,
    )
    return _event_result(event)


async def handle_refund(session: AsyncSession, event: OutboxEvent) -> None:
    p = event.payload
    task_id = p["task_id"]

    rows = await _settlement_rows(session, task_id)
    if TransactionType.refund in rows:
        logger.info("Task %s already refunded, skipping event %s", task_id, event.id)
        return
    if TransactionType.release in rows:
        raise ProcessorPermanentError(
            f"Task {task_id} was released; refund aborted",
            remediation="Investigate why a refund was queued for a released task.",
        )

    refund_ref = await call_with_timeout(
        registry.processor.refund(
            p["hold_ref"], p["refund_amount_cents"], idempotency_token(task_id, "refund")
        )
    )

    poster_id = p["poster_id"]
    record_transaction(
        session,
        user_id=poster_id,
        type=TransactionType.refund,
        amount_cents=p["refund_amount_cents"],
        task_id=task_id,
        external_reference_id=refund_ref,
    )
    await adjust_balance(session, poster_id, p["refund_amount_cents"])
    if p["retained_fee_cents"]:
        record_transaction(
            session,
            user_id=settings.platform_account_id,
            type=TransactionType.platform_fee,
            amount_cents=p["retained_fee_cents"],
            task_id=task_id,
            external_reference_id=refund_ref,
        )
        await adjust_balance(session, settings.platform_account_id, p["retained_fee_cents"])

    # Already cancelled when this refund unwinds a hold from an aborted acceptance.
    await apply_transition(session, task_id, TaskAction.refund_recorded)

    defer_notify(
        session,
        poster_id,
        "refund_completed",
        task_id=task_id,
        refund_amount_cents=p["refund_amount_cents"],
        retained_fee_cents=p["retained_fee_cents"],
    )
