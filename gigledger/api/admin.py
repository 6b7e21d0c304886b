"""Operator routes: outbox inspection and remediation, alert queue."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from gigledger.alerts import alert_to_dict, list_alerts, resolve_alert
from gigledger.auth import verify_admin_key
from gigledger.config import settings
from gigledger.content import render_response
from gigledger.database import get_db_session
from gigledger.db_models import OutboxStatus
from gigledger.models import (
    AlertListResponse,
    AlertResponse,
    ErrorResponse,
    OutboxEventResponse,
    OutboxListResponse,
)
from gigledger.rate_limit import limiter
from gigledger.services.outbox import event_to_dict, list_events, retry_failed

router = APIRouter()


@router.get(
    "/v1/admin/outbox",
    response_model=OutboxListResponse,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_admin)
async def outbox_events(
    request: Request,
    _=Depends(verify_admin_key),
    session=Depends(get_db_session),
    status: str | None = None,
    limit: int = Query(100, ge=1, le=500),
):
    """List outbox events, optionally filtered by status (e.g. `failed`)."""
    try:
        wanted = OutboxStatus(status) if status else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status {status!r}") from None
    events = await list_events(session, wanted, limit=limit)
    return render_response(request, {"events": [event_to_dict(e) for e in events]})


@router.post(
    "/v1/admin/outbox/{event_id}/retry",
    response_model=OutboxEventResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_admin)
async def retry_event(
    request: Request,
    event_id: str,
    _=Depends(verify_admin_key),
    session=Depends(get_db_session),
):
    """Requeue a failed event after the underlying problem was fixed."""
    event = await retry_failed(session, event_id)
    return render_response(request, event_to_dict(event))


@router.get(
    "/v1/admin/alerts",
    response_model=AlertListResponse,
    responses={403: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_admin)
async def alerts(
    request: Request,
    _=Depends(verify_admin_key),
    session=Depends(get_db_session),
    include_resolved: bool = False,
):
    found = await list_alerts(session, include_resolved=include_resolved)
    return render_response(request, {"alerts": [alert_to_dict(a) for a in found]})


@router.post(
    "/v1/admin/alerts/{alert_id}/resolve",
    response_model=AlertResponse,
    responses={404: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_admin)
async def resolve(
    request: Request,
    alert_id: str,
    _=Depends(verify_admin_key),
    session=Depends(get_db_session),
):
    alert = await resolve_alert(session, alert_id)
    return render_response(request, alert_to_dict(alert))
