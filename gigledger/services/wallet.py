"""Wallet balances and the append-only transaction ledger.

Balances only move through `adjust_balance`, a single atomic statement per
call. Nothing here reads a balance, adds to it and writes it back.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from gigledger.collaborators import registry
from gigledger.db_models import (
    OutboxEvent,
    TransactionType,
    UserWalletBalance,
    WalletTransaction,
)
from gigledger.errors import (
    InsufficientFundsError,
    PayoutAccountNotReadyError,
    ProcessorPermanentError,
    ValidationError,
)
from gigledger.ids import idempotency_token, transaction_id
from gigledger.processor import call_with_timeout
from gigledger.services.outbox import enqueue

logger = logging.getLogger("gigledger.wallet")

PAYOUT_EVENT = "wallet.payout"

_balances = UserWalletBalance.__table__


def _credit_statement(dialect: str, user_id: str, delta_cents: int, now: datetime):
    """INSERT … ON CONFLICT DO UPDATE: creates the wallet row or increments it."""
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    stmt = insert(_balances).values(user_id=user_id, balance_cents=delta_cents, updated_at=now)
    return stmt.on_conflict_do_update(
        index_elements=[_balances.c.user_id],
        set_={
            "balance_cents": _balances.c.balance_cents + stmt.excluded.balance_cents,
            "updated_at": stmt.excluded.updated_at,
        },
    )


async def _current_balance(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        select(UserWalletBalance.balance_cents).where(UserWalletBalance.user_id == user_id)
    )
    return result.scalar_one_or_none() or 0


async def adjust_balance(session: AsyncSession, user_id: str, delta_cents: int) -> int:
    """Atomically add `delta_cents` to a wallet and return the new balance.

    Debits carry the non-negativity check in the UPDATE's WHERE clause, so two
    concurrent debits cannot both pass it. Does not commit.
    """
    if not user_id:
        raise ValidationError("user_id is required")
    now = datetime.now(UTC)

    if delta_cents >= 0:
        dialect = session.get_bind().dialect.name
        await session.execute(_credit_statement(dialect, user_id, delta_cents, now))
    else:
        result = await session.execute(
            update(UserWalletBalance)
            .where(
                UserWalletBalance.user_id == user_id,
                UserWalletBalance.balance_cents + delta_cents >= 0,
            )
            .values(balance_cents=UserWalletBalance.balance_cents + delta_cents, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            have = await _current_balance(session, user_id)
            raise InsufficientFundsError(
                f"Insufficient funds. Have {have}, need {-delta_cents}",
                balance=have,
                needed=-delta_cents,
            )

    return await _current_balance(session, user_id)


async def get_balance(session: AsyncSession, user_id: str) -> int:
    """Balance as of the last committed transaction.

    Treat it as eventually consistent with settlements still in the outbox.
    """
    return await _current_balance(session, user_id)


def record_transaction(
    session: AsyncSession,
    *,
    user_id: str,
    type: TransactionType,
    amount_cents: int,
    task_id: str | None = None,
    external_reference_id: str | None = None,
) -> WalletTransaction:
    """Append a ledger row to the caller's unit of work."""
    entry = WalletTransaction(
        id=transaction_id(),
        task_id=task_id,
        user_id=user_id,
        type=type,
        amount_cents=amount_cents,
        external_reference_id=external_reference_id,
    )
    session.add(entry)
    return entry


async def deposit(
    session: AsyncSession,
    user_id: str,
    amount_cents: int,
    external_reference_id: str | None = None,
) -> WalletTransaction:
    if amount_cents <= 0:
        raise ValidationError("Deposit amount must be positive")
    await adjust_balance(session, user_id, amount_cents)
    entry = record_transaction(
        session,
        user_id=user_id,
        type=TransactionType.deposit,
        amount_cents=amount_cents,
        external_reference_id=external_reference_id,
    )
    await session.commit()
    logger.info("Deposit %s: %d cents to %s", entry.id, amount_cents, user_id)
    return entry


async def withdraw(session: AsyncSession, user_id: str, amount_cents: int) -> WalletTransaction:
    """Debit the wallet now; the payout transfer goes through the outbox."""
    if amount_cents <= 0:
        raise ValidationError("Withdrawal amount must be positive")
    accounts = registry.payout_accounts
    if not await accounts.is_payable(user_id):
        raise PayoutAccountNotReadyError(f"User {user_id} has no payable account")
    payout_account = await accounts.payout_account(user_id)

    await adjust_balance(session, user_id, -amount_cents)
    entry = record_transaction(
        session,
        user_id=user_id,
        type=TransactionType.withdrawal,
        amount_cents=-amount_cents,
    )
    enqueue(
        session,
        PAYOUT_EVENT,
        {
            "transaction_id": entry.id,
            "user_id": user_id,
            "amount_cents": amount_cents,
            "payout_account": payout_account,
        },
        dedupe_key=f"payout:{entry.id}",
    )
    await session.commit()
    logger.info("Withdrawal %s: %d cents from %s queued", entry.id, amount_cents, user_id)
    return entry


async def handle_payout(session: AsyncSession, event: OutboxEvent) -> None:
    p = event.payload
    if p.get("transfer_ref"):
        logger.info("Payout for %s already sent as %s", p["transaction_id"], p["transfer_ref"])
        return
    entry = await session.get(WalletTransaction, p["transaction_id"])
    if entry is None or entry.type != TransactionType.withdrawal:
        raise ProcessorPermanentError(
            f"Withdrawal {p['transaction_id']} not found; payout aborted",
            remediation="Investigate the payout queued without a withdrawal in the ledger.",
        )

    transfer_ref = await call_with_timeout(
        registry.processor.transfer(
            p["payout_account"],
            p["amount_cents"],
            idempotency_token(p["transaction_id"], "payout"),
        )
    )
    # Committed with the event's completion by the worker.
    event.payload = {**p, "transfer_ref": transfer_ref}
    session.add(event)
    logger.info("Payout for %s sent as %s", p["transaction_id"], transfer_ref)


async def get_ledger(
    session: AsyncSession, user_id: str, offset: int = 0, limit: int = 50
) -> tuple[list[dict], int]:
    """Return (entries, total_count)."""
    count_result = await session.execute(
        select(func.count())
        .select_from(WalletTransaction)
        .where(WalletTransaction.user_id == user_id)
    )
    total = count_result.scalar_one()

    result = await session.execute(
        select(WalletTransaction)
        .where(WalletTransaction.user_id == user_id)
        .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id)
        .offset(offset)
        .limit(limit)
    )
    entries = [transaction_to_dict(r) for r in result.scalars().all()]
    return entries, total


async def reconstruct_balance(session: AsyncSession, user_id: str) -> int:
    """Sum of the user's ledger rows; must equal the stored balance."""
    result = await session.execute(
        select(func.coalesce(func.sum(WalletTransaction.amount_cents), 0)).where(
            WalletTransaction.user_id == user_id
        )
    )
    return int(result.scalar_one())


def transaction_to_dict(t: WalletTransaction) -> dict:
    return {
        "id": t.id,
        "task_id": t.task_id,
        "user_id": t.user_id,
        "type": t.type.value if hasattr(t.type, "value") else t.type,
        "amount_cents": t.amount_cents,
        "external_reference_id": t.external_reference_id,
        "created_at": t.created_at.isoformat() if t.created_at else None,
    }
