"""Background work: the outbox worker and periodic ledger maintenance."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from gigledger.config import settings
from gigledger.database import close_db, database_url, get_session_factory, init_db
from gigledger.db_models import Task, TaskStatus
from gigledger.services.escrow import get_hold
from gigledger.services.outbox import Handler, OutboxWorker, purge_terminal_events
from gigledger.services.settlement import (
    REFUND_EVENT,
    RELEASE_EVENT,
    handle_refund,
    handle_release,
)
from gigledger.services.wallet import PAYOUT_EVENT, handle_payout
from gigledger.state_machine import TaskAction, apply_transition

logger = logging.getLogger("gigledger.background")


def default_handlers() -> dict[str, Handler]:
    return {
        RELEASE_EVENT: handle_release,
        REFUND_EVENT: handle_refund,
        PAYOUT_EVENT: handle_payout,
    }


def build_worker(session_factory: sessionmaker) -> OutboxWorker:
    return OutboxWorker(session_factory, default_handlers())


async def recover_funded_acceptances(session: AsyncSession, older_than: datetime) -> int:
    """Finish acceptances whose hold was recorded but whose task never left pending_escrow.

    Happens when the accepting process dies between recording the hold and the
    final compare-and-set.
    """
    result = await session.execute(
        select(Task).where(Task.status == TaskStatus.pending_escrow, Task.updated_at < older_than)
    )
    recovered = 0
    for task in result.scalars().all():
        hold = await get_hold(session, task.id)
        if hold is None:
            continue
        if await apply_transition(
            session,
            task.id,
            TaskAction.hold_recorded,
            hold_ref=hold.external_reference_id,
            accepted_at=hold.created_at,
        ):
            recovered += 1
            logger.warning("Recovered stalled acceptance of task %s (hold %s)", task.id, hold.id)
    await session.commit()
    return recovered


async def run_maintenance(session_factory: sessionmaker, now: datetime | None = None) -> dict:
    now = now or datetime.now(UTC)
    async with session_factory() as session:
        purged = await purge_terminal_events(
            session, now - timedelta(days=settings.outbox_retention_days)
        )
        recovered = await recover_funded_acceptances(
            session, now - timedelta(seconds=settings.outbox_claim_timeout_seconds)
        )
    if purged or recovered:
        logger.info("Maintenance: purged=%d, recovered=%d", purged, recovered)
    return {"purged": purged, "recovered": recovered}


async def maintenance_loop(session_factory: sessionmaker) -> None:
    """Run ledger maintenance every `maintenance_interval_seconds`."""
    while True:
        try:
            await run_maintenance(session_factory)
        except Exception:
            logger.exception("Maintenance error")
        await asyncio.sleep(settings.maintenance_interval_seconds)


async def _run_worker() -> None:
    url = database_url()
    await init_db(url)
    worker = build_worker(get_session_factory())
    try:
        await worker.run_forever()
    finally:
        worker.stop()
        await close_db()


def worker_main():
    """Standalone outbox worker process. Several may run against one database.

    Needs the http processor backend: an in-memory processor is private to
    its process, so holds authorized by the API would not exist here.
    """
    logging.basicConfig(level=logging.INFO)
    if settings.processor_backend == "memory":
        logger.error(
            "The standalone worker cannot use the in-memory processor; "
            "set GIGLEDGER_PROCESSOR_BACKEND=http or run the worker inside the API process"
        )
        raise SystemExit(2)
    try:
        asyncio.run(_run_worker())
    except KeyboardInterrupt:
        logger.info("Outbox worker interrupted")


if __name__ == "__main__":
    worker_main()
