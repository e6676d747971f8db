"""Per-destination tax and fee configuration.

Profiles are published as immutable versions. Quotes keep the id and a
frozen snapshot of the version they were priced with, so publishing a new
version never changes a historical breakdown.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from landed.core.errors import ConfigurationMissing, NotFound
from landed.core.timeutils import as_utc, iso_z, now_utc
from landed.ledger.canonical import sha256_hex
from landed.persistence.models import TaxFeeProfileModel

DEFAULT_GATEWAY = "default"


class WeightTier(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_kg: Decimal = Field(default=Decimal("0"), ge=0)
    max_kg: Decimal | None = Field(default=None, ge=0)
    rate_per_kg: Decimal = Field(ge=0)

    def matches(self, weight: Decimal) -> bool:
        return weight >= self.min_kg and (self.max_kg is None or weight <= self.max_kg)


class GatewayFee(BaseModel):
    model_config = ConfigDict(frozen=True)

    percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    fixed: Decimal = Field(default=Decimal("0"), ge=0)


class TaxFeeProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    country: str = Field(min_length=2, max_length=2)
    currency: str = Field(min_length=3, max_length=3)
    customs_percent: Decimal = Field(ge=0, le=1000)
    vat_percent: Decimal = Field(ge=0, le=100)
    min_shipping: Decimal = Field(default=Decimal("0"), ge=0)
    domestic_delivery: Decimal = Field(default=Decimal("0"), ge=0)
    weight_tiers: list[WeightTier] = Field(default_factory=list)
    gateway_fees: dict[str, GatewayFee] = Field(default_factory=dict)
    handling_fixed: Decimal = Field(default=Decimal("0"), ge=0)
    handling_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    insurance_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    insurance_minimum: Decimal = Field(default=Decimal("0"), ge=0)
    default_item_weight_kg: Decimal = Field(default=Decimal("0.5"), ge=0)
    decimal_places: int | None = Field(default=None, ge=0, le=4)

    @field_validator("country", "currency")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()

    def gateway_fee(self, gateway_code: str) -> GatewayFee:
        fee = self.gateway_fees.get(gateway_code) or self.gateway_fees.get(DEFAULT_GATEWAY)
        if fee is None:
            raise ConfigurationMissing(
                f"no gateway fee schedule for {gateway_code!r} in profile {self.country}",
                field="gateway_code",
                detail={"gateway_code": gateway_code, "configured": sorted(self.gateway_fees)},
            )
        return fee

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass(frozen=True)
class ProfileVersion:
    id: int
    country: str
    version: int
    effective_from: datetime
    profile: TaxFeeProfile
    values_hash: str

    @classmethod
    def from_row(cls, row: TaxFeeProfileModel) -> "ProfileVersion":
        return cls(
            id=row.id,
            country=row.country,
            version=row.version,
            effective_from=as_utc(row.effective_from),
            profile=TaxFeeProfile.model_validate(row.values_json),
            values_hash=row.values_hash,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "country": self.country,
            "version": self.version,
            "effective_from": iso_z(self.effective_from),
            "values_hash": self.values_hash,
            "values": self.profile.snapshot(),
        }


class ProfileRegistry:
    def __init__(self, session: Session):
        self.session = session

    def publish(self, profile: TaxFeeProfile, created_by: str, effective_from: datetime | None = None) -> ProfileVersion:
        latest = self.session.scalar(
            select(func.max(TaxFeeProfileModel.version)).where(TaxFeeProfileModel.country == profile.country)
        )
        values = profile.snapshot()
        now = now_utc()
        row = TaxFeeProfileModel(
            country=profile.country,
            version=(latest or 0) + 1,
            effective_from=as_utc(effective_from) or now,
            currency=profile.currency,
            values_json=values,
            values_hash=sha256_hex(values),
            created_by=created_by,
            created_at=now,
        )
        self.session.add(row)
        self.session.flush()
        return ProfileVersion.from_row(row)

    def active(self, country: str, as_of: datetime | None = None) -> ProfileVersion:
        as_of = as_utc(as_of) or now_utc()
        stmt = (
            select(TaxFeeProfileModel)
            .where(TaxFeeProfileModel.country == country.upper())
            .where(TaxFeeProfileModel.effective_from <= as_of)
            .order_by(desc(TaxFeeProfileModel.effective_from), desc(TaxFeeProfileModel.version))
            .limit(1)
        )
        row = self.session.scalar(stmt)
        if row is None:
            raise ConfigurationMissing(
                f"no tax/fee profile for destination {country.upper()}",
                field="destination_country",
                detail={"country": country.upper(), "as_of": iso_z(as_of)},
            )
        return ProfileVersion.from_row(row)

    def get(self, profile_id: int) -> ProfileVersion:
        row = self.session.get(TaxFeeProfileModel, profile_id)
        if row is None:
            raise NotFound(f"profile {profile_id} not found", field="profile_id")
        return ProfileVersion.from_row(row)

    def history(self, country: str) -> list[ProfileVersion]:
        stmt = (
            select(TaxFeeProfileModel)
            .where(TaxFeeProfileModel.country == country.upper())
            .order_by(TaxFeeProfileModel.version.asc())
        )
        return [ProfileVersion.from_row(row) for row in self.session.scalars(stmt).all()]
