"""Wallet routes: balance, ledger, deposits and withdrawals."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError

from gigledger.auth import AuthUser
from gigledger.config import settings
from gigledger.content import parse_body, render_response
from gigledger.database import get_db_session
from gigledger.models import (
    DepositRequest,
    ErrorResponse,
    TransactionResponse,
    WalletResponse,
    WithdrawRequest,
)
from gigledger.rate_limit import limiter
from gigledger.services.wallet import (
    deposit,
    get_balance,
    get_ledger,
    transaction_to_dict,
    withdraw,
)

router = APIRouter()


@router.get(
    "/v1/wallet",
    response_model=WalletResponse,
    responses={401: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_read)
async def my_wallet(
    request: Request,
    user_id: str = AuthUser,
    session=Depends(get_db_session),
    offset: int = Query(0, ge=0),
    limit: int = Query(settings.ledger_page_size, ge=1, le=200),
):
    """Get your balance and transaction ledger, newest first.

    The balance reflects committed settlements only; releases and refunds still
    in the outbox show up once they land.
    """
    ledger, total = await get_ledger(session, user_id, offset=offset, limit=limit)
    balance = await get_balance(session, user_id)
    return render_response(
        request, {"user_id": user_id, "balance_cents": balance, "total": total, "ledger": ledger}
    )


@router.post(
    "/v1/wallet/deposit",
    response_model=TransactionResponse,
    responses={400: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_write)
async def post_deposit(request: Request, user_id: str = AuthUser, session=Depends(get_db_session)):
    body = await parse_body(request)
    try:
        req = DepositRequest(**body)
    except ValidationError:
        return render_response(request, {"error": "Invalid request body"}, status_code=400)

    entry = await deposit(session, user_id, req.amount_cents, req.external_reference_id)
    balance = await get_balance(session, user_id)
    return render_response(
        request,
        {"transaction": transaction_to_dict(entry), "balance_cents": balance},
        status_code=201,
    )


@router.post(
    "/v1/wallet/withdraw",
    response_model=TransactionResponse,
    responses={
        400: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
@limiter.limit(settings.rate_limit_write)
async def post_withdraw(request: Request, user_id: str = AuthUser, session=Depends(get_db_session)):
    """Withdraw to your payout account. The debit is immediate; the payout is queued."""
    body = await parse_body(request)
    try:
        req = WithdrawRequest(**body)
    except ValidationError:
        return render_response(request, {"error": "Invalid request body"}, status_code=400)

    entry = await withdraw(session, user_id, req.amount_cents)
    balance = await get_balance(session, user_id)
    return render_response(
        request,
        {"transaction": transaction_to_dict(entry), "balance_cents": balance},
        status_code=202,
    )
