"""Task lifecycle routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from gigledger.auth import AuthUser
from gigledger.config import settings
from gigledger.content import parse_body, render_response, render_task
from gigledger.database import get_db_session
from gigledger.models import ErrorResponse, SettlementResponse, TaskCreateRequest, TaskResponse
from gigledger.rate_limit import limiter
from gigledger.services.settlement import get_settlement
from gigledger.services.tasks import (
    accept_task,
    cancel_task,
    complete_task,
    create_task,
    get_task,
    task_to_dict,
)

router = APIRouter()


async def _task_view(session, task_id: str) -> dict:
    task = await get_task(session, task_id)
    data = task_to_dict(task)
    settled = await get_settlement(session, task_id)
    data["settlement"] = settled.to_dict() if settled else None
    return data


@router.post(
    "/v1/tasks",
    response_model=TaskResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_write)
async def post_task(request: Request, user_id: str = AuthUser, session=Depends(get_db_session)):
    """Create an open task priced at `amount_cents`."""
    body = await parse_body(request)
    try:
        req = TaskCreateRequest(**body)
    except ValidationError:
        return render_response(request, {"error": "Invalid request body"}, status_code=400)

    task = await create_task(session, user_id, req.amount_cents, req.currency)
    return render_task(request, task_to_dict(task), status_code=201)


@router.get(
    "/v1/tasks/{task_id}",
    response_model=TaskResponse,
    responses={404: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_read)
async def read_task(
    request: Request, task_id: str, user_id: str = AuthUser, session=Depends(get_db_session)
):
    """Task status plus its settlement (pending, completed or failed), if any."""
    data = await _task_view(session, task_id)
    if user_id not in (data["poster_id"], data["hunter_id"]):
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return render_task(request, data)


@router.post(
    "/v1/tasks/{task_id}/accept",
    response_model=TaskResponse,
    responses={
        402: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
@limiter.limit(settings.rate_limit_write)
async def accept(
    request: Request, task_id: str, user_id: str = AuthUser, session=Depends(get_db_session)
):
    """Accept an open task as its hunter. The poster's funds are held in escrow."""
    task = await accept_task(session, task_id, user_id)
    return render_task(request, task_to_dict(task))


@router.post(
    "/v1/tasks/{task_id}/complete",
    response_model=SettlementResponse,
    responses={
        400: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
@limiter.limit(settings.rate_limit_write)
async def complete(
    request: Request, task_id: str, user_id: str = AuthUser, session=Depends(get_db_session)
):
    """Approve the work. Payout to the hunter is queued; 202 until it lands."""
    result = await complete_task(session, task_id, user_id)
    status_code = 200 if result.status == "completed" else 202
    return render_response(request, result.to_dict(), status_code=status_code)


@router.post(
    "/v1/tasks/{task_id}/cancel",
    response_model=TaskResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_write)
async def cancel(
    request: Request, task_id: str, user_id: str = AuthUser, session=Depends(get_db_session)
):
    """Cancel as poster or hunter. A funded task shows a pending refund until it lands."""
    result = await cancel_task(session, task_id, user_id)
    data = await _task_view(session, task_id)
    status_code = 202 if result is not None and result.status == "pending" else 200
    return render_task(request, data, status_code=status_code)
