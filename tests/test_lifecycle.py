from __future__ import annotations

from decimal import Decimal

import pytest

from landed.core.errors import InvalidTransition
from landed.domain import lifecycle


@pytest.mark.parametrize(
    ("paid", "total", "expected"),
    [
        ("0", "100", "unpaid"),
        ("-5", "100", "unpaid"),
        ("40", "100", "partial"),
        ("99.995", "100", "paid"),
        ("100", "100", "paid"),
        ("120", "100", "overpaid"),
    ],
)
def test_payment_status_is_derived_from_amounts(paid, total, expected):
    assert lifecycle.derive_payment_status(Decimal(paid), Decimal(total)) == expected


def test_terminal_statuses_have_no_exits():
    assert lifecycle.TERMINAL == {"completed", "rejected", "expired", "cancelled"}
    for status in lifecycle.TERMINAL:
        with pytest.raises(InvalidTransition):
            lifecycle.check_transition(status, lifecycle.CANCELLED, "unpaid")


def test_transition_table_rejects_skips():
    lifecycle.check_transition(lifecycle.PENDING, lifecycle.SENT, "unpaid")
    with pytest.raises(InvalidTransition) as exc_info:
        lifecycle.check_transition(lifecycle.PENDING, lifecycle.APPROVED, "unpaid")
    assert exc_info.value.detail["allowed"] == ["cancelled", "rejected", "sent"]

    with pytest.raises(InvalidTransition):
        lifecycle.check_transition(lifecycle.PAID, lifecycle.CANCELLED, "paid")


def test_paid_requires_settled_payment_status():
    with pytest.raises(InvalidTransition):
        lifecycle.check_transition(lifecycle.APPROVED, lifecycle.PAID, "partial")
    lifecycle.check_transition(lifecycle.APPROVED, lifecycle.PAID, "paid")
    lifecycle.check_transition(lifecycle.PAYMENT_PENDING, lifecycle.PAID, "overpaid")


def test_unknown_status_is_rejected():
    with pytest.raises(InvalidTransition):
        lifecycle.check_transition(lifecycle.PENDING, "archived", "unpaid")


def test_paid_adjacent_statuses_are_frozen():
    assert lifecycle.is_frozen(lifecycle.SHIPPED)
    assert not lifecycle.is_frozen(lifecycle.PAYMENT_PENDING)
