"""Exchange-rate resolution.

Order: the shipping route's explicit override, then the country-level base
rates (USD cross rate), otherwise ``RateUnavailable``. There is no implicit
1.0 fallback; identical currencies resolve to exactly 1 with source
``identity``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from landed.core.errors import InvalidInput, RateUnavailable
from landed.core.timeutils import as_utc, iso_z, now_utc
from landed.domain.money import currency_scale, to_decimal
from landed.persistence.models import CurrencyRateModel, ShippingRouteModel

logger = logging.getLogger(__name__)

PIVOT_CURRENCY = "USD"

SOURCE_ROUTE_OVERRIDE = "route_override"
SOURCE_COUNTRY_BASE = "country_base"
SOURCE_IDENTITY = "identity"


@dataclass(frozen=True)
class ResolvedRate:
    from_currency: str
    to_currency: str
    rate: Decimal
    source: str
    as_of: datetime

    @property
    def display_places(self) -> int:
        return currency_scale(self.to_currency)

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "from_currency": self.from_currency,
            "to_currency": self.to_currency,
            "rate": format(self.rate, "f"),
            "source": self.source,
            "as_of": iso_z(self.as_of),
            "display_places": self.display_places,
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> "ResolvedRate":
        return cls(
            from_currency=data["from_currency"],
            to_currency=data["to_currency"],
            rate=Decimal(data["rate"]),
            source=data["source"],
            as_of=as_utc(datetime.fromisoformat(data["as_of"].replace("Z", "+00:00"))),
        )


class RateResolver:
    def __init__(self, session: Session):
        self.session = session

    def _base_rate(self, currency: str, as_of: datetime) -> Decimal | None:
        stmt = (
            select(CurrencyRateModel.rate_from_usd)
            .where(CurrencyRateModel.currency == currency)
            .where(CurrencyRateModel.effective_from <= as_of)
            .order_by(desc(CurrencyRateModel.effective_from), desc(CurrencyRateModel.id))
            .limit(1)
        )
        value = self.session.scalar(stmt)
        if value is None:
            # The pivot is 1 by definition; an explicit row may still override it.
            return Decimal("1") if currency == PIVOT_CURRENCY else None
        value = Decimal(str(value))
        return value if value > 0 else None

    def resolve(
        self,
        from_currency: str,
        to_currency: str,
        as_of: datetime | None = None,
        route: ShippingRouteModel | None = None,
    ) -> ResolvedRate:
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        as_of = as_utc(as_of) or now_utc()

        if from_currency == to_currency:
            return ResolvedRate(from_currency, to_currency, Decimal("1"), SOURCE_IDENTITY, as_of)

        if (
            route is not None
            and route.exchange_rate is not None
            and route.currency.upper() == from_currency
            and (route.rate_currency_to or "").upper() == to_currency
        ):
            override = Decimal(str(route.exchange_rate))
            if override > 0:
                logger.info(
                    "rate resolved via route override: %s->%s rate=%s route_id=%s",
                    from_currency,
                    to_currency,
                    override,
                    route.id,
                )
                return ResolvedRate(from_currency, to_currency, override, SOURCE_ROUTE_OVERRIDE, as_of)

        from_base = self._base_rate(from_currency, as_of)
        to_base = self._base_rate(to_currency, as_of)
        if from_base is None or to_base is None:
            missing = [code for code, base in ((from_currency, from_base), (to_currency, to_base)) if base is None]
            raise RateUnavailable(
                f"no exchange rate for {from_currency}->{to_currency}",
                field="currency",
                detail={"missing": missing, "as_of": iso_z(as_of)},
            )

        rate = to_base / from_base
        logger.info("rate resolved via country base: %s->%s rate=%s", from_currency, to_currency, rate)
        return ResolvedRate(from_currency, to_currency, rate, SOURCE_COUNTRY_BASE, as_of)

    def publish_rate(
        self,
        currency: str,
        rate_from_usd,
        effective_from: datetime | None = None,
        source: str = "manual",
    ) -> CurrencyRateModel:
        rate = to_decimal(rate_from_usd, "rate_from_usd")
        if rate <= 0:
            raise InvalidInput("rate_from_usd must be positive", field="rate_from_usd", detail={"value": str(rate)})
        now = now_utc()
        row = CurrencyRateModel(
            currency=currency.upper(),
            rate_from_usd=rate,
            effective_from=as_utc(effective_from) or now,
            source=source,
            created_at=now,
        )
        self.session.add(row)
        self.session.flush()
        return row
