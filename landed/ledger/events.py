from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

EventType = Literal["customer_payment", "refund", "adjustment"]
EventStatus = Literal["pending", "completed", "failed"]


class PaymentEvent(BaseModel):
    """A normalized, already-verified money movement against a quote.

    Gateways differ in everything but these fields; the ledger only looks at
    the signed amount, currency and status. Refund amounts are stored
    negative whichever sign the caller sends.
    """

    event_type: EventType
    amount: Decimal
    currency: str = Field(min_length=3, max_length=3)
    gateway_code: str = Field(min_length=1, max_length=64)
    external_reference: str = Field(min_length=1, max_length=255)
    status: EventStatus = "completed"
    refund_request_id: str | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()

    @field_validator("occurred_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _check_sign(self) -> "PaymentEvent":
        if self.amount == 0:
            raise ValueError("amount must not be zero")
        if self.event_type == "customer_payment" and self.amount < 0:
            raise ValueError("customer_payment amount must be positive; use a refund or adjustment")
        if self.event_type == "refund":
            if not self.refund_request_id:
                raise ValueError("refund events must reference an approved refund request")
            self.amount = -abs(self.amount)
        return self

    @property
    def idempotency_key(self) -> tuple[str, str, str]:
        return (self.gateway_code, self.external_reference, self.status)
