"""Operator alerts: the manual-intervention queue for money that got stuck."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from gigledger.db_models import AlertKind, OperatorAlert
from gigledger.errors import NotFoundError
from gigledger.ids import alert_id

logger = logging.getLogger("gigledger.alerts")


def raise_alert(
    session: AsyncSession,
    kind: AlertKind,
    detail: str,
    *,
    outbox_event_id: str | None = None,
    task_id: str | None = None,
) -> OperatorAlert:
    """Queue an alert in the caller's transaction and log it loudly."""
    alert = OperatorAlert(
        id=alert_id(),
        kind=kind,
        detail=detail,
        outbox_event_id=outbox_event_id,
        task_id=task_id,
    )
    session.add(alert)
    logger.critical(
        "OPERATOR ALERT %s [%s] task=%s event=%s: %s",
        alert.id,
        kind.value,
        task_id,
        outbox_event_id,
        detail,
    )
    return alert


async def list_alerts(
    session: AsyncSession, *, include_resolved: bool = False, limit: int = 100
) -> list[OperatorAlert]:
    query = (
        select(OperatorAlert)
        .order_by(OperatorAlert.created_at)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    if not include_resolved:
        query = query.where(OperatorAlert.resolved == False)  # noqa: E712
    result = await session.execute(query)
    return list(result.scalars().all())


async def resolve_alert(session: AsyncSession, alert_id_: str) -> OperatorAlert:
    alert = await session.get(OperatorAlert, alert_id_)
    if alert is None:
        raise NotFoundError(f"Alert {alert_id_} not found")
    if not alert.resolved:
        alert.resolved = True
        alert.resolved_at = datetime.now(UTC)
        session.add(alert)
        await session.commit()
        logger.info("Resolved alert %s", alert.id)
    return alert


def alert_to_dict(a: OperatorAlert) -> dict:
    return {
        "id": a.id,
        "kind": a.kind.value if hasattr(a.kind, "value") else a.kind,
        "outbox_event_id": a.outbox_event_id,
        "task_id": a.task_id,
        "detail": a.detail,
        "resolved": a.resolved,
        "created_at": a.created_at.isoformat() if a.created_at else None,
        "resolved_at": a.resolved_at.isoformat() if a.resolved_at else None,
    }
