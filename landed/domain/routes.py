from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from landed.core.errors import ConfigurationMissing, InvalidInput
from landed.core.timeutils import now_utc
from landed.domain.profiles import WeightTier
from landed.persistence.models import ShippingRouteModel


class CustomsTier(BaseModel):
    """Customs and VAT rates for baskets inside a price and weight band.

    An unset bound is open. ``AND`` needs both the price and the weight band
    to match, ``OR`` needs either one.
    """

    model_config = ConfigDict(frozen=True)

    rule_name: str = Field(min_length=1, max_length=120)
    price_min: Decimal | None = Field(default=None, ge=0)
    price_max: Decimal | None = Field(default=None, ge=0)
    weight_min: Decimal | None = Field(default=None, ge=0)
    weight_max: Decimal | None = Field(default=None, ge=0)
    logic_type: Literal["AND", "OR"] = "AND"
    customs_percent: Decimal = Field(ge=0, le=1000)
    vat_percent: Decimal = Field(ge=0, le=100)
    priority_order: int = Field(default=1, ge=0)
    is_active: bool = True

    @model_validator(mode="after")
    def _check_bands(self) -> "CustomsTier":
        for low, high, name in (
            (self.price_min, self.price_max, "price"),
            (self.weight_min, self.weight_max, "weight"),
        ):
            if low is not None and high is not None and low > high:
                raise ValueError(f"{name}_min must not exceed {name}_max")
        return self

    def matches(self, price: Decimal, weight: Decimal) -> bool:
        price_match = (self.price_min is None or price >= self.price_min) and (
            self.price_max is None or price <= self.price_max
        )
        weight_match = (self.weight_min is None or weight >= self.weight_min) and (
            self.weight_max is None or weight <= self.weight_max
        )
        if self.logic_type == "OR":
            return price_match or weight_match
        return price_match and weight_match


def select_customs_tier(tiers: Iterable[CustomsTier], price: Decimal, weight: Decimal) -> CustomsTier | None:
    """First active tier by ``priority_order`` that matches, or None."""
    active = sorted((t for t in tiers if t.is_active), key=lambda t: t.priority_order)
    for tier in active:
        if tier.matches(price, weight):
            return tier
    return None


@dataclass(frozen=True)
class ShippingRoute:
    origin_country: str
    destination_country: str
    currency: str
    base_shipping_cost: Decimal = Decimal("0")
    cost_per_kg: Decimal = Decimal("0")
    surcharge: Decimal = Decimal("0")
    origin_sales_tax_percent: Decimal = Decimal("0")
    weight_tiers: tuple[WeightTier, ...] = field(default_factory=tuple)
    customs_tiers: tuple[CustomsTier, ...] = field(default_factory=tuple)
    id: int | None = None

    @classmethod
    def from_row(cls, row: ShippingRouteModel) -> "ShippingRoute":
        return cls(
            id=row.id,
            origin_country=row.origin_country,
            destination_country=row.destination_country,
            currency=row.currency,
            base_shipping_cost=Decimal(str(row.base_shipping_cost)),
            cost_per_kg=Decimal(str(row.cost_per_kg)),
            surcharge=Decimal(str(row.surcharge)),
            origin_sales_tax_percent=Decimal(str(row.origin_sales_tax_percent)),
            weight_tiers=tuple(WeightTier.model_validate(t) for t in (row.weight_tiers or [])),
            customs_tiers=tuple(CustomsTier.model_validate(t) for t in (row.customs_tiers or [])),
        )


class RouteRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_row(self, origin_country: str, destination_country: str) -> ShippingRouteModel:
        stmt = (
            select(ShippingRouteModel)
            .where(ShippingRouteModel.origin_country == origin_country.upper())
            .where(ShippingRouteModel.destination_country == destination_country.upper())
            .where(ShippingRouteModel.active.is_(True))
        )
        row = self.session.scalar(stmt)
        if row is None:
            raise ConfigurationMissing(
                f"no active shipping route {origin_country.upper()}->{destination_country.upper()}",
                field="route",
                detail={"origin_country": origin_country.upper(), "destination_country": destination_country.upper()},
            )
        return row

    def upsert(self, data: dict[str, Any]) -> ShippingRouteModel:
        origin = str(data["origin_country"]).upper()
        destination = str(data["destination_country"]).upper()
        for tier in data.get("weight_tiers") or []:
            WeightTier.model_validate(tier)
        customs_tiers = [CustomsTier.model_validate(t) for t in (data.get("customs_tiers") or [])]
        if data.get("exchange_rate") is not None and not data.get("rate_currency_to"):
            raise InvalidInput("rate_currency_to is required with an exchange_rate override", field="rate_currency_to")

        row = self.session.scalar(
            select(ShippingRouteModel)
            .where(ShippingRouteModel.origin_country == origin)
            .where(ShippingRouteModel.destination_country == destination)
        )
        if row is None:
            row = ShippingRouteModel(origin_country=origin, destination_country=destination)
            self.session.add(row)

        row.currency = str(data["currency"]).upper()
        row.base_shipping_cost = Decimal(str(data.get("base_shipping_cost", 0)))
        row.cost_per_kg = Decimal(str(data.get("cost_per_kg", 0)))
        row.surcharge = Decimal(str(data.get("surcharge", 0)))
        row.origin_sales_tax_percent = Decimal(str(data.get("origin_sales_tax_percent", 0)))
        row.weight_tiers = [
            WeightTier.model_validate(t).model_dump(mode="json") for t in (data.get("weight_tiers") or [])
        ]
        row.customs_tiers = [t.model_dump(mode="json") for t in customs_tiers]
        rate = data.get("exchange_rate")
        row.exchange_rate = Decimal(str(rate)) if rate is not None else None
        row.rate_currency_to = str(data["rate_currency_to"]).upper() if data.get("rate_currency_to") else None
        row.active = bool(data.get("active", True))
        row.updated_at = now_utc()
        self.session.flush()
        return row
