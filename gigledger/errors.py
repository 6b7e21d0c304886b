"""Error taxonomy for the escrow and wallet ledger.

Every error carries the HTTP status the API renders it with and whether the
outbox should retry the work that raised it.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    status_code = 500
    code = "ledger_error"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(LedgerError):
    """Malformed input. Rejected synchronously."""

    status_code = 400
    code = "validation_error"


class NotFoundError(ValidationError):
    status_code = 404
    code = "not_found"


class StateTransitionError(LedgerError):
    """Action not valid for the task's current status."""

    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, message: str = "", *, current: str | None = None) -> None:
        super().__init__(message)
        self.current = current

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.current is not None:
            data["current_status"] = self.current
        return data


class AlreadyProcessedError(LedgerError):
    """Duplicate of a completed operation; `prior` holds the original result."""

    status_code = 200
    code = "already_processed"

    def __init__(self, message: str = "", *, prior: Any = None) -> None:
        super().__init__(message)
        self.prior = prior


class InsufficientFundsError(LedgerError):
    status_code = 402
    code = "insufficient_funds"

    def __init__(self, message: str = "", *, balance: int | None = None, needed: int | None = None):
        super().__init__(message)
        self.balance = balance
        self.needed = needed


class ProcessorError(LedgerError):
    status_code = 502
    code = "processor_error"


class ProcessorTransientError(ProcessorError):
    """Timeout or temporary unavailability; the outbox retries with backoff."""

    status_code = 503
    code = "processor_unavailable"
    retryable = True


class ProcessorPermanentError(ProcessorError):
    """Non-retryable processor rejection, surfaced with remediation guidance."""

    status_code = 422
    code = "processor_rejected"
    default_remediation = "Contact support to resolve the payment issue."

    def __init__(self, message: str = "", *, remediation: str | None = None) -> None:
        super().__init__(message)
        self.remediation = remediation or self.default_remediation

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["remediation"] = self.remediation
        return data


class PayoutAccountNotReadyError(ProcessorPermanentError):
    code = "payout_account_not_ready"
    default_remediation = (
        "The hunter must finish payout account setup before funds can be released."
    )
