"""Typed failures raised by the pricing, ledger and lifecycle layers.

Every error carries a stable ``code`` plus the offending ``field`` (when
there is one) and a ``detail`` dict with the computed values involved, so
callers can render a precise message or alert an operator without parsing
strings.
"""

from __future__ import annotations

from typing import Any


class LandedError(Exception):
    code = "landed_error"

    def __init__(self, message: str, *, field: str | None = None, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "detail": self.message,
            "field": self.field,
            "context": self.detail,
        }


class InvalidInput(LandedError):
    code = "invalid_input"


class CurrencyMismatch(InvalidInput):
    code = "currency_mismatch"


class ConfigurationMissing(LandedError):
    code = "configuration_missing"


class RateUnavailable(ConfigurationMissing):
    code = "rate_unavailable"


class AmountOutOfRange(LandedError):
    code = "amount_out_of_range"


class DuplicateEvent(LandedError):
    """Idempotency hit. Absorbed by the ledger and reported as success."""

    code = "duplicate_event"


class RefundExceedsApproved(LandedError):
    code = "refund_exceeds_approved"


class InvalidTransition(LandedError):
    code = "invalid_transition"


class NotFound(LandedError):
    code = "not_found"
