"""External collaborators: payout-account readiness and notifications.

Wired once at start-up through `registry` (tests swap in their own).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from gigledger.processor import PaymentProcessor, build_processor

logger = logging.getLogger("gigledger.collaborators")


class PayoutAccounts(Protocol):
    async def is_payable(self, user_id: str) -> bool: ...

    async def payout_account(self, user_id: str) -> str: ...


class Notifier(Protocol):
    async def notify(self, user_id: str, event: str, data: dict[str, Any]) -> None: ...


@dataclass
class StaticPayoutAccounts:
    """Payout accounts known up front. `default_payable` covers unknown users."""

    accounts: dict[str, str] = field(default_factory=dict)
    blocked: set[str] = field(default_factory=set)
    default_payable: bool = True

    def register(self, user_id: str, account_ref: str) -> None:
        self.accounts[user_id] = account_ref
        self.blocked.discard(user_id)

    async def is_payable(self, user_id: str) -> bool:
        if user_id in self.blocked:
            return False
        return user_id in self.accounts or self.default_payable

    async def payout_account(self, user_id: str) -> str:
        return self.accounts.get(user_id, f"acct_{user_id}")


class LoggingNotifier:
    async def notify(self, user_id: str, event: str, data: dict[str, Any]) -> None:
        logger.info("Notify %s: %s %s", user_id, event, data)


@dataclass
class RecordingNotifier:
    sent: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)

    async def notify(self, user_id: str, event: str, data: dict[str, Any]) -> None:
        self.sent.append((user_id, event, data))


class Registry:
    def __init__(self) -> None:
        self._processor: PaymentProcessor | None = None
        self.payout_accounts: PayoutAccounts = StaticPayoutAccounts()
        self.notifier: Notifier = LoggingNotifier()

    @property
    def processor(self) -> PaymentProcessor:
        if self._processor is None:
            self._processor = build_processor()
        return self._processor

    def configure(
        self,
        processor: PaymentProcessor | None = None,
        payout_accounts: PayoutAccounts | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        if processor is not None:
            self._processor = processor
        if payout_accounts is not None:
            self.payout_accounts = payout_accounts
        if notifier is not None:
            self.notifier = notifier

    def reset(self) -> None:
        self.__init__()


registry = Registry()


async def notify(user_id: str | None, event: str, **data: Any) -> None:
    """Fire-and-forget: a failing notifier never affects the ledger."""
    if not user_id:
        return
    try:
        await registry.notifier.notify(user_id, event, data)
    except Exception:
        logger.warning("Notification %s for %s failed", event, user_id, exc_info=True)


_DEFERRED_KEY = "gigledger_deferred_notifications"


def defer_notify(session: Any, user_id: str | None, event: str, **data: Any) -> None:
    """Queue a notification to send once the session's transaction commits."""
    if user_id:
        session.info.setdefault(_DEFERRED_KEY, []).append((user_id, event, data))


async def flush_deferred(session: Any) -> None:
    for user_id, event, data in session.info.pop(_DEFERRED_KEY, []):
        await notify(user_id, event, **data)


def discard_deferred(session: Any) -> None:
    session.info.pop(_DEFERRED_KEY, None)
