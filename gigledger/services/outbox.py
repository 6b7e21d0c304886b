"""Reliable event outbox: durable intents for external financial side effects.

`enqueue` adds the intent to the caller's transaction, so it commits or rolls
back together with the ledger change that needs it. `OutboxWorker` claims due
events one at a time with a single conditional UPDATE, runs the handler for
the event type and either completes the event in the handler's transaction or
schedules a retry with one shared backoff policy. Handlers must re-check
business state: delivery is at-least-once.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from gigledger.alerts import raise_alert
from gigledger.collaborators import discard_deferred, flush_deferred, notify
from gigledger.config import settings
from gigledger.db_models import AlertKind, OutboxEvent, OutboxStatus
from gigledger.errors import NotFoundError, ProcessorPermanentError, StateTransitionError
from gigledger.ids import outbox_id

logger = logging.getLogger("gigledger.outbox")

Handler = Callable[[AsyncSession, OutboxEvent], Awaitable[None]]


@dataclass(frozen=True)
class ExponentialBackoff:
    """Capped exponential backoff: base, base*factor, base*factor^2, …"""

    base_seconds: float = 1.0
    factor: float = 2.0
    cap_seconds: float = 300.0

    def delay(self, retry_count: int) -> float:
        if retry_count < 1:
            return 0.0
        return min(self.cap_seconds, self.base_seconds * self.factor ** (retry_count - 1))

    def next_attempt(self, retry_count: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay(retry_count))


def default_backoff() -> ExponentialBackoff:
    return ExponentialBackoff(
        base_seconds=settings.outbox_backoff_base_seconds,
        cap_seconds=settings.outbox_backoff_cap_seconds,
    )


def enqueue(
    session: AsyncSession,
    event_type: str,
    payload: dict,
    *,
    dedupe_key: str | None = None,
    task_id: str | None = None,
) -> OutboxEvent:
    """Record an intent in the caller's unit of work. Does not commit."""
    event = OutboxEvent(
        id=outbox_id(),
        event_type=event_type,
        payload=payload,
        dedupe_key=dedupe_key,
        task_id=task_id,
        next_retry_at=datetime.now(UTC),
    )
    session.add(event)
    logger.debug("Enqueued %s %s (task=%s)", event_type, event.id, task_id)
    return event


async def get_event_by_key(session: AsyncSession, dedupe_key: str) -> OutboxEvent | None:
    result = await session.execute(
        select(OutboxEvent)
        .where(OutboxEvent.dedupe_key == dedupe_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _due(now: datetime):
    return and_(OutboxEvent.status == OutboxStatus.pending, OutboxEvent.next_retry_at <= now)


async def reclaim_stale(
    session: AsyncSession,
    now: datetime,
    claim_timeout_seconds: int,
    max_attempts: int | None = None,
) -> int:
    """Hand `processing` events whose worker died back to the queue.

    A reclaimed event counts as an attempt. One that has used up its budget is
    failed with an `outbox_exhausted` alert instead, so an event that keeps
    killing its worker still ends up in front of an operator.
    """
    max_attempts = max_attempts or settings.outbox_max_attempts
    stale_before = now - timedelta(seconds=claim_timeout_seconds)
    stale = and_(
        OutboxEvent.status == OutboxStatus.processing, OutboxEvent.claimed_at < stale_before
    )
    expired = "claim expired (worker crashed or timed out)"

    result = await session.execute(
        select(OutboxEvent)
        .where(stale, OutboxEvent.retry_count + 1 >= max_attempts)
        .execution_options(populate_existing=True)
    )
    exhausted = []
    for event in result.scalars().all():
        failed = await session.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == event.id, stale)
            .values(
                status=OutboxStatus.failed,
                retry_count=OutboxEvent.retry_count + 1,
                processed_at=now,
                last_error=expired,
                claimed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if failed.rowcount == 1:
            raise_alert(
                session,
                AlertKind.outbox_exhausted,
                f"{event.event_type} failed {event.retry_count + 1} times: {expired}",
                outbox_event_id=event.id,
                task_id=event.task_id,
            )
            exhausted.append(event)

    result = await session.execute(
        update(OutboxEvent)
        .where(stale)
        .values(
            status=OutboxStatus.pending,
            retry_count=OutboxEvent.retry_count + 1,
            next_retry_at=now,
            last_error=expired,
            claimed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount:
        logger.warning("Reclaimed %d stale outbox events", result.rowcount)
    for event in exhausted:
        logger.error("Outbox event %s (%s) exhausted by expired claims", event.id, event.event_type)
        await notify(
            event.payload.get("notify_user_id"),
            f"{event.event_type}.failed",
            task_id=event.task_id,
            error=expired,
            remediation=None,
        )
    return result.rowcount + len(exhausted)


async def claim_next(session: AsyncSession, now: datetime, batch: int = 10) -> str | None:
    """Claim one due event; returns its id or None when nothing is due.

    The claim is a single conditional UPDATE (pending and due -> processing).
    Whoever gets rowcount 1 owns the event; losers move on to the next candidate.
    """
    result = await session.execute(
        select(OutboxEvent.id)
        .where(_due(now))
        .order_by(OutboxEvent.next_retry_at, OutboxEvent.created_at)
        .limit(batch)
    )
    candidates = list(result.scalars().all())
    for event_id in candidates:
        claimed = await session.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id, _due(now))
            .values(status=OutboxStatus.processing, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if claimed.rowcount == 1:
            return event_id
    return None


async def retry_failed(session: AsyncSession, event_id: str) -> OutboxEvent:
    """Operator remediation: put a failed event back in the queue.

    retry_count is kept; only the attempt budget check is relaxed by one round.
    """
    event = await session.get(OutboxEvent, event_id, populate_existing=True)
    if event is None:
        raise NotFoundError(f"Outbox event {event_id} not found")
    if event.status != OutboxStatus.failed:
        raise StateTransitionError(
            f"Only failed events can be retried (event is {event.status.value})",
            current=event.status.value,
        )
    result = await session.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == event_id, OutboxEvent.status == OutboxStatus.failed)
        .values(status=OutboxStatus.pending, next_retry_at=datetime.now(UTC), claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount != 1:
        raise StateTransitionError(f"Event {event_id} changed while being retried")
    logger.info("Requeued failed outbox event %s (%s)", event_id, event.event_type)
    return await session.get(OutboxEvent, event_id, populate_existing=True)


async def purge_terminal_events(session: AsyncSession, older_than: datetime) -> int:
    """Delete completed events past the retention window. Failed ones stay."""
    result = await session.execute(
        delete(OutboxEvent)
        .where(OutboxEvent.status == OutboxStatus.completed, OutboxEvent.processed_at < older_than)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount:
        logger.info("Purged %d completed outbox events", result.rowcount)
    return result.rowcount


async def list_events(
    session: AsyncSession, status: OutboxStatus | None = None, limit: int = 100
) -> list[OutboxEvent]:
    query = (
        select(OutboxEvent)
        .order_by(OutboxEvent.created_at)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    if status is not None:
        query = query.where(OutboxEvent.status == status)
    result = await session.execute(query)
    return list(result.scalars().all())


def event_to_dict(e: OutboxEvent) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "status": e.status.value,
        "task_id": e.task_id,
        "retry_count": e.retry_count,
        "next_retry_at": e.next_retry_at.isoformat() if e.next_retry_at else None,
        "last_error": e.last_error,
        "created_at": e.created_at.isoformat() if e.created_at else None,
        "processed_at": e.processed_at.isoformat() if e.processed_at else None,
    }


class OutboxWorker:
    """Claims and runs due outbox events.

    Safe to run as several instances against one database: the claim UPDATE
    guarantees a single owner per event, and handlers are idempotent.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        handlers: dict[str, Handler],
        backoff: ExponentialBackoff | None = None,
        max_attempts: int | None = None,
        claim_timeout_seconds: int | None = None,
    ):
        self.session_factory = session_factory
        self.handlers = handlers
        self.backoff = backoff or default_backoff()
        self.max_attempts = max_attempts or settings.outbox_max_attempts
        self.claim_timeout_seconds = (
            claim_timeout_seconds
            if claim_timeout_seconds is not None
            else settings.outbox_claim_timeout_seconds
        )
        self._stopped = asyncio.Event()

    async def run_once(self, now: datetime | None = None, limit: int | None = None) -> int:
        """Process every event due at `now`. Returns how many were attempted."""
        now = now or datetime.now(UTC)
        async with self.session_factory() as session:
            await reclaim_stale(session, now, self.claim_timeout_seconds, self.max_attempts)

        processed = 0
        while limit is None or processed < limit:
            async with self.session_factory() as session:
                event_id = await claim_next(session, now)
            if event_id is None:
                break
            await self.process(event_id, now)
            processed += 1
        return processed

    async def process(self, event_id: str, now: datetime) -> None:
        async with self.session_factory() as session:
            event = await session.get(OutboxEvent, event_id)
            if event is None or event.status != OutboxStatus.processing:
                return
            handler = self.handlers.get(event.event_type)
            try:
                if handler is None:
                    raise ProcessorPermanentError(f"No handler for event type {event.event_type}")
                await handler(session, event)
                event.status = OutboxStatus.completed
                event.processed_at = now
                event.last_error = None
                session.add(event)
                await session.commit()
            except ProcessorPermanentError as e:
                await session.rollback()
                discard_deferred(session)
                await self._fail(session, event_id, e, now)
                return
            except Exception as e:
                await session.rollback()
                discard_deferred(session)
                await self._schedule_retry(session, event_id, e, now)
                return

            logger.info("Outbox event %s (%s) completed", event.id, event.event_type)
            await flush_deferred(session)

    async def _schedule_retry(
        self, session: AsyncSession, event_id: str, error: Exception, now: datetime
    ) -> None:
        event = await session.get(OutboxEvent, event_id, populate_existing=True)
        event.retry_count += 1
        event.last_error = f"{type(error).__name__}: {error}"[:2000]
        event.claimed_at = None
        if event.retry_count >= self.max_attempts:
            event.status = OutboxStatus.failed
            event.processed_at = now
            raise_alert(
                session,
                AlertKind.outbox_exhausted,
                f"{event.event_type} failed {event.retry_count} times: {event.last_error}",
                outbox_event_id=event.id,
                task_id=event.task_id,
            )
        else:
            event.status = OutboxStatus.pending
            event.next_retry_at = self.backoff.next_attempt(event.retry_count, now)
            logger.warning(
                "Outbox event %s (%s) attempt %d failed, retry at %s: %s",
                event.id,
                event.event_type,
                event.retry_count,
                event.next_retry_at.isoformat(),
                error,
            )
        session.add(event)
        await session.commit()
        if event.status == OutboxStatus.failed:
            await self._notify_failure(event, None)

    async def _fail(
        self, session: AsyncSession, event_id: str, error: ProcessorPermanentError, now: datetime
    ) -> None:
        event = await session.get(OutboxEvent, event_id, populate_existing=True)
        event.retry_count += 1
        event.status = OutboxStatus.failed
        event.processed_at = now
        event.claimed_at = None
        event.last_error = f"{type(error).__name__}: {error}"[:2000]
        raise_alert(
            session,
            getattr(error, "alert_kind", AlertKind.permanent_failure),
            f"{event.event_type} permanently failed: {error}. Remediation: {error.remediation}",
            outbox_event_id=event.id,
            task_id=event.task_id,
        )
        session.add(event)
        await session.commit()
        logger.error(
            "Outbox event %s (%s) failed permanently: %s", event.id, event.event_type, error
        )
        await self._notify_failure(event, error.remediation)

    async def _notify_failure(self, event: OutboxEvent, remediation: str | None) -> None:
        await notify(
            event.payload.get("notify_user_id"),
            f"{event.event_type}.failed",
            task_id=event.task_id,
            error=event.last_error,
            remediation=remediation,
        )

    def stop(self) -> None:
        self._stopped.set()

    async def run_forever(self, poll_seconds: float | None = None) -> None:
        interval = poll_seconds if poll_seconds is not None else settings.outbox_poll_seconds
        logger.info("Outbox worker started (poll every %ss)", interval)
        while not self._stopped.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Outbox worker error")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopped.wait(), timeout=interval)
        logger.info("Outbox worker stopped")
