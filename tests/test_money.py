from __future__ import annotations

from decimal import Decimal

import pytest

from landed.core.errors import CurrencyMismatch, InvalidInput
from landed.domain.money import Money, format_money, sum_money, to_decimal


def test_money_rejects_mixed_currencies():
    with pytest.raises(CurrencyMismatch):
        Money(Decimal("1"), "USD") + Money(Decimal("1"), "EUR")


def test_quantize_rounds_half_up_at_currency_scale():
    assert Money(Decimal("2.345"), "USD").quantize().amount == Decimal("2.35")
    assert Money(Decimal("2.344"), "USD").quantize().amount == Decimal("2.34")
    assert Money(Decimal("1500.5"), "JPY").quantize().amount == Decimal("1501")
    assert Money(Decimal("1.2345"), "KWD").quantize().amount == Decimal("1.235")


def test_minor_units_follow_currency_scale():
    assert Money(Decimal("19.99"), "USD").to_minor() == 1999
    assert Money(Decimal("1999"), "JPY").to_minor() == 1999
    assert Money.from_minor(1999, "USD").amount == Decimal("19.99")
    assert Money.from_minor(-3000, "USD").amount == Decimal("-30.00")


def test_to_decimal_rejects_non_numeric_and_non_finite():
    with pytest.raises(InvalidInput):
        to_decimal("abc")
    with pytest.raises(InvalidInput):
        to_decimal(Decimal("NaN"))
    with pytest.raises(InvalidInput):
        to_decimal(True)
    assert to_decimal("1.10") == Decimal("1.10")


def test_sum_and_format():
    total = sum_money([Money(Decimal("1.005"), "USD"), Money(Decimal("2"), "USD")], "USD")
    assert total.amount == Decimal("3.005")
    assert format_money(total) == "$3.01"
    assert format_money(Money(Decimal("-1234.5"), "CHF")) == "-CHF 1,234.50"
