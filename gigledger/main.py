"""gigledger: escrow payments and wallet ledger for a gig marketplace."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from gigledger.api.router import api_router
from gigledger.background import build_worker, maintenance_loop
from gigledger.config import settings
from gigledger.content import render_response
from gigledger.database import close_db, database_url, get_session_factory, init_db
from gigledger.errors import AlreadyProcessedError, LedgerError
from gigledger.rate_limit import limiter

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("gigledger")


@asynccontextmanager
async def lifespan(app: FastAPI):
    db_url = database_url()
    await init_db(db_url)
    safe_url = re.sub(r"://[^:]+:[^@]+@", "://***:***@", db_url)
    logger.info("Database connected: %s", safe_url)

    session_factory = get_session_factory()
    bg_tasks = [asyncio.create_task(maintenance_loop(session_factory))]
    worker = None
    if settings.outbox_worker_enabled:
        worker = build_worker(session_factory)
        bg_tasks.append(asyncio.create_task(worker.run_forever()))

    yield

    if worker is not None:
        worker.stop()
    for task in bg_tasks:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await close_db()
    logger.info("Database closed")


app = FastAPI(
    title="gigledger",
    description="Escrow payment and wallet ledger engine",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

app.include_router(api_router)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return render_response(
        request,
        {"error": exc.detail},
        status_code=exc.status_code,
    )


@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError):
    if isinstance(exc, AlreadyProcessedError) and hasattr(exc.prior, "to_dict"):
        return render_response(request, exc.prior.to_dict(), status_code=200)
    if exc.status_code >= 500:
        logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return render_response(request, exc.to_dict(), status_code=exc.status_code)


@app.get("/health")
async def health():
    return {"status": "ok"}


def main():
    import uvicorn

    uvicorn.run(
        "gigledger.main:app",
        host=settings.host,
        port=settings.port,
    )


if __name__ == "__main__":
    main()
