from __future__ import annotations

from decimal import Decimal

from landed.core.errors import InvalidTransition

PENDING = "pending"
SENT = "sent"
APPROVED = "approved"
PAYMENT_PENDING = "payment_pending"
PAID = "paid"
PROCESSING = "processing"
ORDERED = "ordered"
SHIPPED = "shipped"
COMPLETED = "completed"
REJECTED = "rejected"
EXPIRED = "expired"
CANCELLED = "cancelled"

STATUSES = (
    PENDING,
    SENT,
    APPROVED,
    PAYMENT_PENDING,
    PAID,
    PROCESSING,
    ORDERED,
    SHIPPED,
    COMPLETED,
    REJECTED,
    EXPIRED,
    CANCELLED,
)

TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({SENT, REJECTED, CANCELLED}),
    SENT: frozenset({APPROVED, REJECTED, EXPIRED, CANCELLED}),
    APPROVED: frozenset({PAYMENT_PENDING, PAID, CANCELLED}),
    PAYMENT_PENDING: frozenset({PAID, CANCELLED}),
    PAID: frozenset({PROCESSING}),
    PROCESSING: frozenset({ORDERED}),
    ORDERED: frozenset({SHIPPED}),
    SHIPPED: frozenset({COMPLETED}),
    COMPLETED: frozenset(),
    REJECTED: frozenset(),
    EXPIRED: frozenset(),
    CANCELLED: frozenset(),
}

# Breakdown and shipping address are frozen from here on.
PAID_ADJACENT = frozenset({PAID, PROCESSING, ORDERED, SHIPPED, COMPLETED})
PRE_PAID = frozenset({PENDING, SENT, APPROVED, PAYMENT_PENDING})
TERMINAL = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

TRIGGER_MANUAL = "manual"
TRIGGER_AUTO_CALCULATION = "auto_calculation"
TRIGGER_QUOTE_SENT = "quote_sent"
TRIGGER_PAYMENT_RECEIVED = "payment_received"
TRIGGER_AUTO_EXPIRATION = "auto_expiration"
TRIGGER_ORDER_SHIPPED = "order_shipped"

# Payment status, orthogonal to lifecycle status.
UNPAID = "unpaid"
PARTIAL = "partial"
PAID_IN_FULL = "paid"
OVERPAID = "overpaid"
SETTLED = frozenset({PAID_IN_FULL, OVERPAID})


def derive_payment_status(paid: Decimal, total: Decimal, epsilon: Decimal = Decimal("0.01")) -> str:
    """Pure function of amount paid against the quote total."""
    if paid <= 0:
        return UNPAID
    if abs(paid - total) <= epsilon:
        return PAID_IN_FULL
    if paid > total:
        return OVERPAID
    return PARTIAL


def is_frozen(status: str) -> bool:
    return status in PAID_ADJACENT


def check_transition(from_status: str, to_status: str, payment_status: str) -> None:
    if to_status not in TRANSITIONS:
        raise InvalidTransition(f"unknown status {to_status!r}", field="to_status")
    allowed = TRANSITIONS.get(from_status, frozenset())
    if to_status not in allowed:
        raise InvalidTransition(
            f"cannot move quote from {from_status} to {to_status}",
            field="to_status",
            detail={"from": from_status, "to": to_status, "allowed": sorted(allowed)},
        )
    if to_status == PAID and payment_status not in SETTLED:
        raise InvalidTransition(
            f"quote cannot be marked paid while payment status is {payment_status}",
            field="payment_status",
            detail={"from": from_status, "to": to_status, "payment_status": payment_status},
        )
