"""Escrow holds: one authorized, ledger-recorded hold per task."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from gigledger.alerts import raise_alert
from gigledger.collaborators import notify, registry
from gigledger.db_models import AlertKind, TransactionType, WalletTransaction
from gigledger.errors import InsufficientFundsError, ProcessorError, ValidationError
from gigledger.ids import idempotency_token
from gigledger.processor import call_with_timeout
from gigledger.services.wallet import adjust_balance, get_balance, record_transaction

logger = logging.getLogger("gigledger.escrow")


@dataclass(frozen=True)
class HoldResult:
    task_id: str
    hold_ref: str
    transaction_id: str
    amount_cents: int
    replayed: bool = False


def _from_row(row: WalletTransaction) -> HoldResult:
    return HoldResult(
        task_id=row.task_id or "",
        hold_ref=row.external_reference_id or "",
        transaction_id=row.id,
        amount_cents=-row.amount_cents,
        replayed=True,
    )


async def get_hold(session: AsyncSession, task_id: str) -> WalletTransaction | None:
    result = await session.execute(
        select(WalletTransaction).where(
            WalletTransaction.task_id == task_id,
            WalletTransaction.type == TransactionType.escrow_hold,
        )
    )
    return result.scalar_one_or_none()


async def create_hold(
    session: AsyncSession,
    task_id: str,
    amount_cents: int,
    poster_id: str,
    *,
    escrow_reference_id: str | None = None,
) -> HoldResult:
    """Authorize `amount_cents` against the poster and record the hold.

    Idempotent by task: a replay returns the recorded hold. Either the
    processor authorization and the escrow_hold row both exist afterwards, or
    neither does (a hold whose ledger write fails is voided again).

    `escrow_reference_id` scopes the authorization token to one acceptance
    attempt, so a task re-accepted after a voided hold gets a fresh hold.
    """
    if amount_cents <= 0:
        raise ValidationError("Hold amount must be positive")
    if not poster_id:
        raise ValidationError("poster_id is required")

    existing = await get_hold(session, task_id)
    if existing is not None:
        logger.info("Hold for task %s already recorded, replaying", task_id)
        return _from_row(existing)

    have = await get_balance(session, poster_id)
    if have < amount_cents:
        raise InsufficientFundsError(
            f"Insufficient funds. Have {have}, need {amount_cents}",
            balance=have,
            needed=amount_cents,
        )

    operation = f"authorize:{escrow_reference_id}" if escrow_reference_id else "authorize"
    processor = registry.processor
    hold_ref = await call_with_timeout(
        processor.authorize(amount_cents, poster_id, idempotency_token(task_id, operation))
    )

    try:
        await adjust_balance(session, poster_id, -amount_cents)
        entry = record_transaction(
            session,
            user_id=poster_id,
            type=TransactionType.escrow_hold,
            amount_cents=-amount_cents,
            task_id=task_id,
            external_reference_id=hold_ref,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        winner = await get_hold(session, task_id)
        if winner is not None and winner.external_reference_id == hold_ref:
            # A concurrent call recorded the same authorization first.
            return _from_row(winner)
        await _void_hold(session, task_id, hold_ref, amount_cents)
        raise

    logger.info("Hold %s recorded for task %s: %d cents", hold_ref, task_id, amount_cents)
    await notify(poster_id, "hold_created", task_id=task_id, amount_cents=amount_cents)
    return HoldResult(
        task_id=task_id,
        hold_ref=hold_ref,
        transaction_id=entry.id,
        amount_cents=amount_cents,
    )


async def _void_hold(session: AsyncSession, task_id: str, hold_ref: str, amount_cents: int) -> None:
    try:
        token = idempotency_token(task_id, f"void:{hold_ref}")
        await call_with_timeout(registry.processor.refund(hold_ref, amount_cents, token))
        logger.warning("Voided hold %s for task %s after failed ledger write", hold_ref, task_id)
    except ProcessorError as e:
        raise_alert(
            session,
            AlertKind.reconciliation,
            f"Authorization {hold_ref} could not be voided after its ledger write failed: {e}",
            task_id=task_id,
        )
        await session.commit()
