from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from landed.core.errors import ConfigurationMissing, RateUnavailable
from landed.core.timeutils import now_utc
from landed.domain.profiles import ProfileRegistry, TaxFeeProfile
from landed.domain.rates import SOURCE_COUNTRY_BASE, SOURCE_IDENTITY, SOURCE_ROUTE_OVERRIDE, RateResolver
from landed.persistence.models import ShippingRouteModel
from landed.quotes.service import QuoteService


def test_identity_rate_for_same_currency(session):
    rate = RateResolver(session).resolve("usd", "USD")
    assert rate.rate == Decimal("1")
    assert rate.source == SOURCE_IDENTITY


def test_cross_rate_from_country_base_rates(session):
    resolver = RateResolver(session)
    resolver.publish_rate("CHF", "0.9")
    resolver.publish_rate("SEK", "10.5")

    rate = resolver.resolve("CHF", "SEK")
    assert rate.source == SOURCE_COUNTRY_BASE
    assert rate.rate == Decimal("10.5") / Decimal("0.9")


def test_latest_effective_base_rate_wins(session):
    resolver = RateResolver(session)
    resolver.publish_rate("NOK", "10", effective_from=now_utc() - timedelta(days=2))
    resolver.publish_rate("NOK", "11", effective_from=now_utc() - timedelta(days=1))
    resolver.publish_rate("NOK", "99", effective_from=now_utc() + timedelta(days=1))

    assert resolver.resolve("USD", "NOK").rate == Decimal("11")


def test_route_override_beats_country_rates(session):
    resolver = RateResolver(session)
    resolver.publish_rate("DKK", "6.9")
    route = ShippingRouteModel(
        id=999,
        origin_country="US",
        destination_country="DK",
        currency="USD",
        exchange_rate=Decimal("7.25"),
        rate_currency_to="DKK",
    )

    rate = resolver.resolve("USD", "DKK", route=route)
    assert rate.source == SOURCE_ROUTE_OVERRIDE
    assert rate.rate == Decimal("7.25")


def test_missing_rate_raises_instead_of_defaulting(session):
    with pytest.raises(RateUnavailable) as exc_info:
        RateResolver(session).resolve("USD", "XTS")
    assert exc_info.value.detail["missing"] == ["XTS"]


def _de_profile(vat: str) -> TaxFeeProfile:
    return TaxFeeProfile(
        country="DE",
        currency="USD",
        customs_percent=Decimal("4"),
        vat_percent=Decimal(vat),
        gateway_fees={"default": {"percent": "0", "fixed": "0"}},
    )


def test_profiles_are_versioned_by_effective_date(session):
    registry = ProfileRegistry(session)
    first = registry.publish(_de_profile("19"), created_by="admin:test")
    second = registry.publish(
        _de_profile("21"),
        created_by="admin:test",
        effective_from=now_utc() + timedelta(days=1),
    )

    assert second.version == first.version + 1
    assert registry.active("DE").profile.vat_percent == Decimal("19")
    assert registry.active("DE", now_utc() + timedelta(days=2)).profile.vat_percent == Decimal("21")
    assert [v.version for v in registry.history("DE")][-2:] == [first.version, second.version]


def test_missing_profile_is_configuration_error(session):
    with pytest.raises(ConfigurationMissing):
        ProfileRegistry(session).active("ZZ")


def test_quote_keeps_profile_snapshot_after_new_version(session, make_request):
    from landed.domain.routes import RouteRepository

    RouteRepository(session).upsert({"origin_country": "US", "destination_country": "NZ", "currency": "USD"})
    registry = ProfileRegistry(session)
    registry.publish(
        TaxFeeProfile(
            country="NZ",
            currency="USD",
            customs_percent=Decimal("0"),
            vat_percent=Decimal("15"),
            gateway_fees={"default": {"percent": "0", "fixed": "0"}},
        ),
        created_by="admin:test",
    )
    service = QuoteService(session)
    quote = service.create_quote(make_request(lane=("US", "NZ")), "customer:test")
    original = service.current_breakdown(quote)
    assert original.destination_tax.amount == Decimal("15.00")

    registry.publish(
        TaxFeeProfile(
            country="NZ",
            currency="USD",
            customs_percent=Decimal("0"),
            vat_percent=Decimal("10"),
            gateway_fees={"default": {"percent": "0", "fixed": "0"}},
        ),
        created_by="admin:test",
    )
    assert service.current_breakdown(service.get(quote.id)) == original

    service.recalculate(quote.id, make_request(lane=("US", "NZ")), "customer:test")
    assert service.current_breakdown(quote).destination_tax.amount == Decimal("10.00")
    assert [r.revision for r in service.revisions(quote.id)] == [1, 2]
