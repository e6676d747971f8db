from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from landed.core.errors import AmountOutOfRange, CurrencyMismatch, InvalidInput

ZERO = Decimal("0")
HUNDRED = Decimal("100")
# Ledger amounts are stored as signed 64-bit minor units.
MAX_MINOR_UNITS = 2**63 - 1

_ZERO_DECIMAL = {"JPY", "KRW", "VND", "CLP", "ISK", "UGX", "XAF", "XOF"}
_THREE_DECIMAL = {"BHD", "KWD", "OMR", "JOD", "TND", "IQD", "LYD"}

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "INR": "₹",
    "NPR": "₨",
    "JPY": "¥",
    "CNY": "¥",
    "AUD": "A$",
    "CAD": "C$",
    "SGD": "S$",
    "AED": "د.إ",
    "KRW": "₩",
}


def currency_scale(currency: str) -> int:
    code = currency.upper()
    if code in _ZERO_DECIMAL:
        return 0
    if code in _THREE_DECIMAL:
        return 3
    return 2


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise InvalidInput(f"{field} must be numeric", field=field)
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise InvalidInput(f"{field} is not a number: {value!r}", field=field) from exc
    if not result.is_finite():
        raise InvalidInput(f"{field} must be finite", field=field, detail={"value": str(result)})
    return result


def percent(value: Decimal) -> Decimal:
    """Percentage points to a ratio, e.g. 8.88 -> 0.0888."""
    return value / HUNDRED


@dataclass(frozen=True)
class Money:
    amount: Decimal
    currency: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_decimal(self.amount))
        object.__setattr__(self, "currency", self.currency.upper())

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(ZERO, currency)

    @classmethod
    def from_minor(cls, minor: int, currency: str) -> "Money":
        return cls(Decimal(minor).scaleb(-currency_scale(currency)), currency)

    @property
    def scale(self) -> int:
        return currency_scale(self.currency)

    def _check(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"cannot combine Money with {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatch(
                f"cannot combine {self.currency} with {other.currency}",
                detail={"left": self.currency, "right": other.currency},
            )

    def __add__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, factor: Decimal | int) -> "Money":
        if isinstance(factor, Money):
            raise TypeError("cannot multiply Money by Money")
        return Money(self.amount * to_decimal(factor, "factor"), self.currency)

    __rmul__ = __mul__

    def __neg__(self) -> "Money":
        return Money(-self.amount, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount <= other.amount

    def __gt__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount > other.amount

    def __ge__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount >= other.amount

    def max(self, other: "Money") -> "Money":
        self._check(other)
        return self if self.amount >= other.amount else other

    def convert(self, rate: Decimal, to_currency: str) -> "Money":
        return Money(self.amount * to_decimal(rate, "rate"), to_currency)

    def quantize(self, places: int | None = None) -> "Money":
        scale = self.scale if places is None else places
        exponent = Decimal(1).scaleb(-scale)
        return Money(self.amount.quantize(exponent, rounding=ROUND_HALF_UP), self.currency)

    def to_minor(self) -> int:
        return int(self.quantize().amount.scaleb(self.scale))

    def is_zero(self) -> bool:
        return self.amount == ZERO


def sum_money(values, currency: str) -> Money:
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total


def format_money(value: Money, places: int | None = None) -> str:
    rounded = value.quantize(places)
    scale = rounded.scale if places is None else places
    sign = "-" if rounded.amount < 0 else ""
    body = f"{abs(rounded.amount):,.{scale}f}"
    symbol = CURRENCY_SYMBOLS.get(rounded.currency)
    if symbol is None:
        return f"{sign}{rounded.currency} {body}"
    return f"{sign}{symbol}{body}"


def check_magnitude(value: Money, ceiling: Decimal | None = None, field: str = "amount") -> None:
    """Reject amounts too large to store or above ``ceiling``, before any rounding."""
    limit = Money.from_minor(MAX_MINOR_UNITS, value.currency).amount
    if ceiling is not None and ceiling < limit:
        limit = ceiling
    if abs(value.amount) > limit:
        raise AmountOutOfRange(
            f"{field} {value.amount} {value.currency} exceeds the allowed magnitude",
            field=field,
            detail={"amount": str(value.amount), "currency": value.currency, "ceiling": format(limit, "f")},
        )
