from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from landed.api.utils import ADMIN, READERS, parse_as_of
from landed.core.security import Actor, get_actor, require_roles
from landed.core.timeutils import iso_z
from landed.domain.profiles import ProfileRegistry, TaxFeeProfile, WeightTier
from landed.domain.rates import RateResolver
from landed.domain.routes import CustomsTier, RouteRepository
from landed.persistence.models import ShippingRouteModel
from landed.persistence.pg import get_session

router = APIRouter(tags=["config"])


class ProfilePublishRequest(BaseModel):
    profile: TaxFeeProfile
    effective_from: datetime | None = None


class RatePublishRequest(BaseModel):
    currency: str = Field(min_length=3, max_length=3)
    rate_from_usd: Decimal
    effective_from: datetime | None = None
    source: str = "manual"


class RouteUpsertRequest(BaseModel):
    origin_country: str = Field(min_length=2, max_length=2)
    destination_country: str = Field(min_length=2, max_length=2)
    currency: str = Field(min_length=3, max_length=3)
    base_shipping_cost: Decimal = Field(default=Decimal("0"), ge=0)
    cost_per_kg: Decimal = Field(default=Decimal("0"), ge=0)
    surcharge: Decimal = Field(default=Decimal("0"), ge=0)
    origin_sales_tax_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    weight_tiers: list[WeightTier] = Field(default_factory=list)
    customs_tiers: list[CustomsTier] = Field(default_factory=list)
    exchange_rate: Decimal | None = Field(default=None, gt=0)
    rate_currency_to: str | None = Field(default=None, min_length=3, max_length=3)
    active: bool = True


def _route_to_dict(row: ShippingRouteModel) -> dict:
    return {
        "id": row.id,
        "origin_country": row.origin_country,
        "destination_country": row.destination_country,
        "currency": row.currency,
        "base_shipping_cost": format(Decimal(str(row.base_shipping_cost)), "f"),
        "cost_per_kg": format(Decimal(str(row.cost_per_kg)), "f"),
        "surcharge": format(Decimal(str(row.surcharge)), "f"),
        "origin_sales_tax_percent": format(Decimal(str(row.origin_sales_tax_percent)), "f"),
        "weight_tiers": row.weight_tiers,
        "customs_tiers": row.customs_tiers,
        "exchange_rate": None if row.exchange_rate is None else format(Decimal(str(row.exchange_rate)), "f"),
        "rate_currency_to": row.rate_currency_to,
        "active": row.active,
        "updated_at": iso_z(row.updated_at),
    }


@router.post("/config/profiles", status_code=201)
def publish_profile(
    request: ProfilePublishRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, ADMIN, "admin role required")
    version = ProfileRegistry(session).publish(request.profile, actor.label, request.effective_from)
    return version.to_dict()


@router.get("/config/profiles/{country}")
def get_profiles(
    country: str,
    as_of: str | None = Query(default=None, description="ISO timestamp, defaults to now"),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, READERS)
    try:
        as_of_dt = parse_as_of(as_of) if as_of else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    registry = ProfileRegistry(session)
    return {
        "active": registry.active(country, as_of_dt).to_dict(),
        "history": [version.to_dict() for version in registry.history(country)],
    }


@router.post("/config/rates", status_code=201)
def publish_rate(
    request: RatePublishRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, ADMIN, "admin role required")
    row = RateResolver(session).publish_rate(
        request.currency,
        request.rate_from_usd,
        effective_from=request.effective_from,
        source=request.source,
    )
    return {
        "id": row.id,
        "currency": row.currency,
        "rate_from_usd": format(Decimal(str(row.rate_from_usd)), "f"),
        "effective_from": iso_z(row.effective_from),
        "source": row.source,
    }


@router.get("/config/rates/resolve")
def resolve_rate(
    from_currency: str = Query(..., min_length=3, max_length=3),
    to_currency: str = Query(..., min_length=3, max_length=3),
    origin_country: str | None = Query(default=None),
    destination_country: str | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, READERS)
    route = None
    if origin_country and destination_country:
        route = RouteRepository(session).get_row(origin_country, destination_country)
    return RateResolver(session).resolve(from_currency, to_currency, route=route).to_snapshot()


@router.put("/config/routes")
def upsert_route(
    request: RouteUpsertRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, ADMIN, "admin role required")
    row = RouteRepository(session).upsert(request.model_dump(mode="json"))
    return _route_to_dict(row)


@router.get("/config/routes/{origin_country}/{destination_country}")
def get_route(
    origin_country: str,
    destination_country: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, READERS)
    return _route_to_dict(RouteRepository(session).get_row(origin_country, destination_country))
