"""External payment processor boundary.

The settlement code only ever talks to a `PaymentProcessor`. Two
implementations ship here: an HTTP client for a processor gateway and an
in-memory processor used for local development and tests.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Protocol, TypeVar

import httpx

from gigledger.config import settings
from gigledger.errors import ProcessorPermanentError, ProcessorTransientError
from gigledger.ids import gen_id

logger = logging.getLogger("gigledger.processor")

T = TypeVar("T")


class PaymentProcessor(Protocol):
    async def authorize(self, amount_cents: int, payer_ref: str, idempotency_token: str) -> str:
        """Reserve funds without capturing them. Returns the hold reference."""
        ...

    async def capture(self, hold_ref: str, idempotency_token: str) -> str: ...

    async def transfer(
        self, payee_account_ref: str, amount_cents: int, idempotency_token: str
    ) -> str: ...

    async def refund(self, hold_ref: str, amount_cents: int, idempotency_token: str) -> str: ...


async def call_with_timeout(coro: Awaitable[T], timeout: float | None = None) -> T:
    """Bound a processor call; a timeout counts as a transient failure."""
    limit = timeout if timeout is not None else settings.processor_timeout_seconds
    try:
        return await asyncio.wait_for(coro, timeout=limit)
    except TimeoutError as e:
        raise ProcessorTransientError(f"Processor call timed out after {limit}s") from e


# ---------------------------------------------------------------------------
# HTTP gateway client
# ---------------------------------------------------------------------------


class HttpPaymentProcessor:
    """Processor gateway client.

    Every request carries an `Idempotency-Key` header so the gateway
    deduplicates retried calls on its side too.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self, idempotency_token: str) -> dict:
        headers = {"Content-Type": "application/json", "Idempotency-Key": idempotency_token}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, path: str, body: dict, idempotency_token: str, ref_key: str) -> str:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.post(path, json=body, headers=self._headers(idempotency_token))
        except httpx.TimeoutException as e:
            raise ProcessorTransientError(f"Processor timeout on {path}") from e
        except httpx.TransportError as e:
            raise ProcessorTransientError(f"Processor unreachable: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise ProcessorTransientError(f"Processor returned {resp.status_code} on {path}")
        if resp.status_code >= 400:
            try:
                detail = resp.json()
            except ValueError:
                detail = {}
            raise ProcessorPermanentError(
                detail.get("error") or f"Processor rejected {path} ({resp.status_code})",
                remediation=detail.get("remediation"),
            )

        data = resp.json()
        ref = data.get(ref_key)
        if not ref:
            raise ProcessorTransientError(f"Processor response missing {ref_key}")
        return ref

    async def authorize(self, amount_cents: int, payer_ref: str, idempotency_token: str) -> str:
        return await self._post(
            "/v1/authorizations",
            {"amount_cents": amount_cents, "payer_ref": payer_ref},
            idempotency_token,
            "hold_ref",
        )

    async def capture(self, hold_ref: str, idempotency_token: str) -> str:
        return await self._post(
            f"/v1/authorizations/{hold_ref}/capture", {}, idempotency_token, "capture_ref"
        )

    async def transfer(
        self, payee_account_ref: str, amount_cents: int, idempotency_token: str
    ) -> str:
        return await self._post(
            "/v1/transfers",
            {"payee_account_ref": payee_account_ref, "amount_cents": amount_cents},
            idempotency_token,
            "transfer_ref",
        )

    async def refund(self, hold_ref: str, amount_cents: int, idempotency_token: str) -> str:
        return await self._post(
            f"/v1/authorizations/{hold_ref}/refunds",
            {"amount_cents": amount_cents},
            idempotency_token,
            "refund_ref",
        )


# ---------------------------------------------------------------------------
# In-memory processor
# ---------------------------------------------------------------------------


@dataclass
class Hold:
    ref: str
    amount_cents: int
    payer_ref: str
    captured: bool = False
    refunded_cents: int = 0
    closed: bool = False


@dataclass
class InMemoryPaymentProcessor:
    """Deterministic processor that deduplicates by idempotency token.

    Failures can be scripted per operation with `fail_next`; a scripted
    failure is consumed before the token cache is consulted, so it behaves
    like a call that never reached the processor.
    """

    holds: dict[str, Hold] = field(default_factory=dict)
    transfers: dict[str, tuple[str, int]] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)
    delay_seconds: float = 0.0
    _results: dict[str, str] = field(default_factory=dict)
    _failures: dict[str, list[Exception]] = field(default_factory=dict)

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        self._failures.setdefault(operation, []).extend([error] * times)

    def effective(self, operation: str) -> int:
        """Number of distinct (non-replayed) effects for an operation."""
        return sum(1 for key in self._results if key.startswith(f"{operation}|"))

    async def _begin(self, operation: str, token: str) -> str | None:
        self.calls.append((operation, token))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)
        return self._results.get(f"{operation}|{token}")

    def _remember(self, operation: str, token: str, ref: str) -> str:
        self._results[f"{operation}|{token}"] = ref
        return ref

    async def authorize(self, amount_cents: int, payer_ref: str, idempotency_token: str) -> str:
        prior = await self._begin("authorize", idempotency_token)
        if prior:
            return prior
        if amount_cents <= 0:
            raise ProcessorPermanentError("Authorization amount must be positive")
        ref = gen_id("hold_")
        self.holds[ref] = Hold(ref=ref, amount_cents=amount_cents, payer_ref=payer_ref)
        return self._remember("authorize", idempotency_token, ref)

    async def capture(self, hold_ref: str, idempotency_token: str) -> str:
        prior = await self._begin("capture", idempotency_token)
        if prior:
            return prior
        hold = self.holds.get(hold_ref)
        if hold is None or hold.closed:
            raise ProcessorPermanentError(f"Hold {hold_ref} is not capturable")
        hold.captured = True
        return self._remember("capture", idempotency_token, gen_id("cap_"))

    async def transfer(
        self, payee_account_ref: str, amount_cents: int, idempotency_token: str
    ) -> str:
        prior = await self._begin("transfer", idempotency_token)
        if prior:
            return prior
        ref = gen_id("tr_")
        self.transfers[ref] = (payee_account_ref, amount_cents)
        return self._remember("transfer", idempotency_token, ref)

    async def refund(self, hold_ref: str, amount_cents: int, idempotency_token: str) -> str:
        prior = await self._begin("refund", idempotency_token)
        if prior:
            return prior
        hold = self.holds.get(hold_ref)
        if hold is None:
            raise ProcessorPermanentError(f"Unknown hold {hold_ref}")
        if hold.closed:
            raise ProcessorPermanentError(f"Hold {hold_ref} was already refunded")
        if amount_cents < 0 or amount_cents > hold.amount_cents:
            raise ProcessorPermanentError(f"Refund of {amount_cents} exceeds hold {hold_ref}")
        # The refunded part of an uncaptured hold is released; the rest is kept.
        hold.refunded_cents = amount_cents
        hold.closed = True
        return self._remember("refund", idempotency_token, gen_id("rf_"))


def build_processor() -> PaymentProcessor:
    if settings.processor_backend == "http":
        if not settings.processor_url:
            raise RuntimeError("GIGLEDGER_PROCESSOR_URL is required for the http backend")
        return HttpPaymentProcessor(
            settings.processor_url,
            api_key=settings.processor_api_key,
            timeout=settings.processor_timeout_seconds,
        )
    logger.warning("Using in-memory payment processor; no real funds move")
    return InMemoryPaymentProcessor()
