from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from landed.domain.calculator import Discount, LineItem, PricingOptions


class LineItemIn(BaseModel):
    name: str | None = None
    quantity: Decimal
    unit_price: Decimal
    unit_weight_kg: Decimal | None = None
    notes: str | None = None

    def to_domain(self) -> LineItem:
        return LineItem(
            quantity=self.quantity,
            unit_price=self.unit_price,
            unit_weight_kg=self.unit_weight_kg,
            notes=self.notes,
            name=self.name,
        )


class DiscountIn(BaseModel):
    type: Literal["percentage", "fixed"]
    value: Decimal
    code: str | None = None


class PricingRequest(BaseModel):
    origin_country: str = Field(min_length=2, max_length=2)
    destination_country: str = Field(min_length=2, max_length=2)
    origin_currency: str = Field(min_length=3, max_length=3)
    buyer_currency: str = Field(min_length=3, max_length=3)
    items: list[LineItemIn]
    gateway_code: str = "default"
    insurance_required: bool = True
    handling_mode: Literal["fixed", "percentage", "both"] = "both"
    discount: DiscountIn | None = None
    origin_sales_tax_percent: Decimal | None = None
    customer_ref: str | None = None
    shipping_address: dict[str, Any] = Field(default_factory=dict)

    @field_validator("origin_country", "destination_country", "origin_currency", "buyer_currency")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()

    def line_items(self) -> list[LineItem]:
        return [item.to_domain() for item in self.items]

    def options(self) -> PricingOptions:
        discount = None
        if self.discount is not None:
            discount = Discount(type=self.discount.type, value=self.discount.value, code=self.discount.code)
        return PricingOptions(
            gateway_code=self.gateway_code,
            insurance_required=self.insurance_required,
            handling_mode=self.handling_mode,
            discount=discount,
            origin_sales_tax_percent=self.origin_sales_tax_percent,
        )


class TransitionRequest(BaseModel):
    to_status: str
    reason: str | None = None


class PriceAdjustmentRequest(BaseModel):
    pricing: PricingRequest
    reason: str = Field(min_length=1, max_length=255)


class AddressUpdateRequest(BaseModel):
    shipping_address: dict[str, Any]
    reason: str | None = Field(default=None, max_length=255)
