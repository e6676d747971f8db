"""Landed-cost calculation.

``compute`` is a pure function: it reads nothing but its arguments and keeps
every intermediate base on the returned breakdown. Amounts are carried at
full precision; rounding happens only when a breakdown is serialized for
persistence or display.

Order of operations::

    subtotal          = sum(quantity * unit_price)
    purchase_tax      = subtotal * origin sales tax
    actual_item_cost  = subtotal + purchase_tax
    shipping          = max(min_shipping, weight tier) + surcharge + domestic delivery
    customs_base      = actual_item_cost + shipping
    customs_amount    = customs_base * customs percent (route tier, else profile)
    tax_base          = actual_item_cost + shipping + customs + handling + insurance
    destination_tax   = tax_base * vat percent (route tier, else profile)
    pre_fee_total     = tax_base + destination_tax - discount
    gateway_fee       = pre_fee_total * gateway percent + gateway fixed
    grand_total       = pre_fee_total + gateway_fee
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Literal

from landed.core.errors import AmountOutOfRange, ConfigurationMissing, CurrencyMismatch, InvalidInput
from landed.domain.money import ZERO, Money, percent, sum_money, to_decimal
from landed.domain.profiles import TaxFeeProfile, WeightTier
from landed.domain.rates import ResolvedRate
from landed.domain.routes import ShippingRoute, select_customs_tier

HandlingMode = Literal["fixed", "percentage", "both"]
DiscountType = Literal["percentage", "fixed"]


@dataclass(frozen=True)
class LineItem:
    quantity: Decimal
    unit_price: Decimal
    unit_weight_kg: Decimal | None = None
    notes: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class Discount:
    type: DiscountType
    value: Decimal
    code: str | None = None


@dataclass(frozen=True)
class PricingOptions:
    gateway_code: str = "default"
    insurance_required: bool = True
    handling_mode: HandlingMode = "both"
    discount: Discount | None = None
    origin_sales_tax_percent: Decimal | None = None


MONEY_FIELDS = (
    "subtotal",
    "purchase_tax",
    "actual_item_cost",
    "shipping_international",
    "shipping_domestic",
    "shipping",
    "customs_base",
    "customs_amount",
    "handling",
    "insurance",
    "destination_tax_base",
    "destination_tax",
    "discount",
    "pre_fee_total",
    "gateway_fee",
    "grand_total",
    "grand_total_buyer",
)


@dataclass(frozen=True)
class CostBreakdown:
    subtotal: Money
    purchase_tax: Money
    actual_item_cost: Money
    shipping_international: Money
    shipping_domestic: Money
    shipping: Money
    customs_base: Money
    customs_amount: Money
    handling: Money
    insurance: Money
    destination_tax_base: Money
    destination_tax: Money
    discount: Money
    pre_fee_total: Money
    gateway_fee: Money
    grand_total: Money
    grand_total_buyer: Money
    total_weight_kg: Decimal
    applied_rates: dict[str, Decimal] = field(default_factory=dict)
    exchange_rate: dict[str, Any] = field(default_factory=dict)
    customs_tier: str | None = None

    @property
    def currency(self) -> str:
        return self.grand_total.currency

    def components_sum(self) -> Money:
        """Grand total rebuilt from the itemized components."""
        return (
            self.actual_item_cost
            + self.shipping
            + self.customs_amount
            + self.handling
            + self.insurance
            + self.destination_tax
            - self.discount
            + self.gateway_fee
        )

    def to_dict(self, rounded: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {"currency": self.currency, "buyer_currency": self.grand_total_buyer.currency}
        for name in MONEY_FIELDS:
            value: Money = getattr(self, name)
            data[name] = format((value.quantize() if rounded else value).amount, "f")
        data["total_weight_kg"] = format(self.total_weight_kg, "f")
        data["applied_rates"] = {k: format(v, "f") for k, v in self.applied_rates.items()}
        data["exchange_rate"] = dict(self.exchange_rate)
        data["customs_tier"] = self.customs_tier
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CostBreakdown":
        values: dict[str, Any] = {}
        for name in MONEY_FIELDS:
            currency = data["buyer_currency"] if name == "grand_total_buyer" else data["currency"]
            values[name] = Money(Decimal(data[name]), currency)
        return cls(
            **values,
            total_weight_kg=Decimal(data["total_weight_kg"]),
            applied_rates={k: Decimal(v) for k, v in data.get("applied_rates", {}).items()},
            exchange_rate=dict(data.get("exchange_rate", {})),
            customs_tier=data.get("customs_tier"),
        )


def _non_negative(value: Any, field_name: str) -> Decimal:
    number = to_decimal(value, field_name)
    if number < 0:
        raise InvalidInput(f"{field_name} must not be negative", field=field_name, detail={"value": str(number)})
    return number


def _validate_items(items: Iterable[LineItem]) -> list[LineItem]:
    checked = list(items)
    if not checked:
        raise InvalidInput("at least one line item is required", field="items")
    for index, item in enumerate(checked):
        _non_negative(item.quantity, f"items[{index}].quantity")
        _non_negative(item.unit_price, f"items[{index}].unit_price")
        if item.unit_weight_kg is not None:
            _non_negative(item.unit_weight_kg, f"items[{index}].unit_weight_kg")
    return checked


def total_weight(items: Iterable[LineItem], default_weight: Decimal) -> Decimal:
    weight = ZERO
    for item in items:
        unit = default_weight if item.unit_weight_kg is None else to_decimal(item.unit_weight_kg)
        weight += to_decimal(item.quantity) * unit
    return weight


def tier_shipping(weight: Decimal, route: ShippingRoute, profile: TaxFeeProfile) -> Decimal:
    tiers: tuple[WeightTier, ...] | list[WeightTier] = route.weight_tiers or profile.weight_tiers
    rate_per_kg = route.cost_per_kg
    for tier in tiers:
        if tier.matches(weight):
            rate_per_kg = tier.rate_per_kg
            break
    return route.base_shipping_cost + weight * rate_per_kg


def _discount_amount(discount: Discount | None, subtotal: Money) -> Money:
    if discount is None:
        return Money.zero(subtotal.currency)
    value = _non_negative(discount.value, "discount.value")
    if discount.type == "percentage":
        if value > 100:
            raise InvalidInput("percentage discount cannot exceed 100", field="discount.value")
        return subtotal * percent(value)
    if discount.type == "fixed":
        return Money(min(value, subtotal.amount), subtotal.currency)
    raise InvalidInput(f"unknown discount type {discount.type!r}", field="discount.type")


def compute(
    items: Iterable[LineItem],
    route: ShippingRoute | None,
    profile: TaxFeeProfile | None,
    rate: ResolvedRate | None,
    options: PricingOptions | None = None,
    max_total: Decimal | None = None,
) -> CostBreakdown:
    if profile is None:
        raise ConfigurationMissing("tax/fee profile is required", field="profile")
    if rate is None:
        raise ConfigurationMissing("exchange rate is required", field="rate")
    if route is None:
        raise ConfigurationMissing("shipping route is required", field="route")
    options = options or PricingOptions()
    checked = _validate_items(items)

    currency = rate.from_currency
    for source, source_currency in (("profile.currency", profile.currency), ("route.currency", route.currency)):
        if source_currency.upper() != currency:
            raise CurrencyMismatch(
                f"{source} {source_currency} differs from calculation currency {currency}",
                field=source,
                detail={"expected": currency, "actual": source_currency},
            )

    def money(value: Decimal) -> Money:
        return Money(value, currency)

    # 1. items
    subtotal = sum_money((money(to_decimal(i.quantity) * to_decimal(i.unit_price)) for i in checked), currency)

    # 2. origin purchase tax
    purchase_tax_percent = (
        route.origin_sales_tax_percent
        if options.origin_sales_tax_percent is None
        else _non_negative(options.origin_sales_tax_percent, "origin_sales_tax_percent")
    )
    purchase_tax = subtotal * percent(purchase_tax_percent)
    actual_item_cost = subtotal + purchase_tax

    # 3. shipping
    weight = total_weight(checked, profile.default_item_weight_kg)
    international = money(tier_shipping(weight, route, profile)).max(money(profile.min_shipping)) + money(route.surcharge)
    domestic = money(profile.domestic_delivery)
    shipping = international + domestic

    # 4. customs, with a matching route tier overriding the profile rates
    tier = select_customs_tier(route.customs_tiers, subtotal.amount, weight)
    customs_percent = profile.customs_percent if tier is None else tier.customs_percent
    vat_percent = profile.vat_percent if tier is None else tier.vat_percent
    customs_base = actual_item_cost + shipping
    customs_amount = customs_base * percent(customs_percent)

    # handling and insurance feed the destination tax base
    handling = Money.zero(currency)
    if options.handling_mode in ("fixed", "both"):
        handling = handling + money(profile.handling_fixed)
    if options.handling_mode in ("percentage", "both"):
        handling = handling + actual_item_cost * percent(profile.handling_percent)

    insurance = Money.zero(currency)
    if options.insurance_required and profile.insurance_percent > 0:
        insurance = (actual_item_cost * percent(profile.insurance_percent)).max(money(profile.insurance_minimum))

    # 5. destination VAT/GST
    destination_tax_base = actual_item_cost + shipping + customs_amount + handling + insurance
    destination_tax = destination_tax_base * percent(vat_percent)

    # 6. discount
    discount = _discount_amount(options.discount, subtotal)
    pre_fee_total = destination_tax_base + destination_tax - discount

    # 7. gateway fee on the post-discount total, never on itself
    gateway = profile.gateway_fee(options.gateway_code)
    gateway_fee = pre_fee_total * percent(gateway.percent) + money(gateway.fixed)

    # 8. total
    grand_total = pre_fee_total + gateway_fee
    if max_total is not None and grand_total.amount > max_total:
        raise AmountOutOfRange(
            f"grand total {grand_total.amount} exceeds ceiling {max_total}",
            field="grand_total",
            detail={"grand_total": format(grand_total.amount, "f"), "ceiling": format(max_total, "f")},
        )

    return CostBreakdown(
        subtotal=subtotal,
        purchase_tax=purchase_tax,
        actual_item_cost=actual_item_cost,
        shipping_international=international,
        shipping_domestic=domestic,
        shipping=shipping,
        customs_base=customs_base,
        customs_amount=customs_amount,
        handling=handling,
        insurance=insurance,
        destination_tax_base=destination_tax_base,
        destination_tax=destination_tax,
        discount=discount,
        pre_fee_total=pre_fee_total,
        gateway_fee=gateway_fee,
        grand_total=grand_total,
        grand_total_buyer=grand_total.convert(rate.rate, rate.to_currency),
        total_weight_kg=weight,
        applied_rates={
            "purchase_tax_percent": purchase_tax_percent,
            "customs_percent": customs_percent,
            "vat_percent": vat_percent,
            "gateway_percent": gateway.percent,
            "gateway_fixed": gateway.fixed,
        },
        exchange_rate=rate.to_snapshot(),
        customs_tier=None if tier is None else tier.rule_name,
    )
