"""Pydantic models for request/response schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class TaskCreateRequest(BaseModel):
    amount_cents: int = Field(gt=0, description="Task price in the smallest currency unit")
    currency: str | None = Field(default=None, max_length=3, description="ISO currency code")

    @field_validator("currency")
    @classmethod
    def lower_currency(cls, v: str | None) -> str | None:
        return v.lower() if v else v


class DepositRequest(BaseModel):
    amount_cents: int = Field(gt=0)
    external_reference_id: str | None = Field(
        default=None, max_length=200, description="Processor reference of the incoming payment"
    )


class WithdrawRequest(BaseModel):
    amount_cents: int = Field(gt=0)


class SettlementResponse(BaseModel):
    task_id: str
    kind: str
    status: str
    amount_cents: int
    hunter_amount_cents: int | None = None
    platform_fee_cents: int | None = None
    refund_amount_cents: int | None = None
    retained_fee_cents: int | None = None
    outbox_event_id: str | None = None
    error: str | None = None


class TaskResponse(BaseModel):
    id: str
    poster_id: str
    hunter_id: str | None = None
    amount_cents: int
    currency: str
    status: str
    escrow_reference_id: str | None = None
    accepted_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    settlement: SettlementResponse | None = None


class LedgerEntry(BaseModel):
    id: str
    task_id: str | None = None
    user_id: str
    type: str
    amount_cents: int
    external_reference_id: str | None = None
    created_at: str | None = None


class WalletResponse(BaseModel):
    user_id: str
    balance_cents: int
    total: int
    ledger: list[LedgerEntry]


class TransactionResponse(BaseModel):
    transaction: LedgerEntry
    balance_cents: int


class OutboxEventResponse(BaseModel):
    id: str
    event_type: str
    status: str
    task_id: str | None = None
    retry_count: int
    next_retry_at: str | None = None
    last_error: str | None = None
    created_at: str | None = None
    processed_at: str | None = None


class OutboxListResponse(BaseModel):
    events: list[OutboxEventResponse]


class AlertResponse(BaseModel):
    id: str
    kind: str
    outbox_event_id: str | None = None
    task_id: str | None = None
    detail: str
    resolved: bool
    created_at: str | None = None
    resolved_at: str | None = None


class AlertListResponse(BaseModel):
    alerts: list[AlertResponse]


class ErrorResponse(BaseModel):
    error: str
    code: str | None = None
    remediation: str | None = None
    current_status: str | None = None
