"""Test fixtures: file-backed SQLite per test, in-memory processor, ASGI client.

Each test gets its own database file so concurrent sessions really use
separate connections (an in-memory aiosqlite database would share one).
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from gigledger.background import default_handlers
from gigledger.collaborators import RecordingNotifier, StaticPayoutAccounts, registry
from gigledger.config import settings
from gigledger.database import get_db_session
from gigledger.db_models import (  # noqa: F401 (registers tables)
    OperatorAlert,
    OutboxEvent,
    Task,
    UserWalletBalance,
    WalletTransaction,
)
from gigledger.main import app
from gigledger.processor import InMemoryPaymentProcessor
from gigledger.rate_limit import limiter
from gigledger.services.outbox import ExponentialBackoff, OutboxWorker
from gigledger.services.tasks import accept_task, create_task
from gigledger.services.wallet import deposit

ADMIN_KEY = "test-admin-key"


@pytest.fixture
def processor():
    return InMemoryPaymentProcessor()


@pytest.fixture
def payout_accounts():
    return StaticPayoutAccounts()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def db(tmp_path, processor, payout_accounts, notifier):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)  # type: ignore[call-overload]

    async def override_get_db_session():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db_session
    registry.configure(processor=processor, payout_accounts=payout_accounts, notifier=notifier)

    yield factory

    app.dependency_overrides.clear()
    registry.reset()
    await engine.dispose()


@pytest.fixture
async def session(db):
    async with db() as s:
        yield s


@pytest.fixture
def worker(db):
    return OutboxWorker(
        db,
        default_handlers(),
        backoff=ExponentialBackoff(base_seconds=1, factor=2, cap_seconds=300),
        max_attempts=5,
        claim_timeout_seconds=300,
    )


@pytest.fixture
async def client(db):
    limiter.reset()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_key():
    with patch.object(settings, "admin_key", ADMIN_KEY):
        yield ADMIN_KEY


def user_header(user_id: str) -> dict:
    return {"X-User-Id": user_id, "Accept": "application/json"}


def admin_header() -> dict:
    return {"Authorization": f"Bearer {ADMIN_KEY}", "Accept": "application/json"}


async def funded_task(
    session: AsyncSession,
    poster_id: str = "poster",
    hunter_id: str = "hunter",
    amount_cents: int = 10_000,
    balance_cents: int | None = None,
) -> Task:
    """Helper: deposit for the poster, create a task and accept it. Returns the task."""
    await deposit(session, poster_id, amount_cents if balance_cents is None else balance_cents)
    task = await create_task(session, poster_id, amount_cents)
    return await accept_task(session, task.id, hunter_id)
