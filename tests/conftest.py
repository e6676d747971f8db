from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import landed.persistence.pg as pg
from landed.core.config import get_settings
from landed.domain.profiles import ProfileRegistry, TaxFeeProfile
from landed.domain.routes import RouteRepository
from landed.persistence.models import Base
from landed.quotes.schemas import PricingRequest

# Every component is zero, so a quote's total equals its items subtotal.
FLAT_LANE = ("US", "AU")
# 8.88% purchase tax, 35.00 flat shipping, 15% customs, 20% VAT.
TAXED_LANE = ("US", "GB")


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.auth_enabled = True

    engine = pg.create_engine_from_url(f"sqlite+pysqlite:///{test_db_path}")
    TestSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    pg.engine = engine
    pg.SessionLocal = TestSessionLocal

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="session", autouse=True)
def seeded_lanes(configure_test_engine):
    with pg.session_scope() as s:
        routes = RouteRepository(s)
        profiles = ProfileRegistry(s)
        routes.upsert(
            {
                "origin_country": FLAT_LANE[0],
                "destination_country": FLAT_LANE[1],
                "currency": "USD",
            }
        )
        profiles.publish(
            TaxFeeProfile(
                country=FLAT_LANE[1],
                currency="USD",
                customs_percent=Decimal("0"),
                vat_percent=Decimal("0"),
                gateway_fees={"default": {"percent": "0", "fixed": "0"}},
            ),
            created_by="admin:seed",
        )
        routes.upsert(
            {
                "origin_country": TAXED_LANE[0],
                "destination_country": TAXED_LANE[1],
                "currency": "USD",
                "base_shipping_cost": "35.00",
                "origin_sales_tax_percent": "8.88",
            }
        )
        profiles.publish(
            TaxFeeProfile(
                country=TAXED_LANE[1],
                currency="USD",
                customs_percent=Decimal("15"),
                vat_percent=Decimal("20"),
                gateway_fees={
                    "default": {"percent": "0", "fixed": "0"},
                    "stripe": {"percent": "2.9", "fixed": "0.30"},
                },
            ),
            created_by="admin:seed",
        )
    yield


@pytest.fixture()
def client(configure_test_engine):
    from landed.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture()
def session(configure_test_engine):
    with pg.session_scope() as s:
        yield s


@pytest.fixture()
def auth_headers():
    settings = get_settings()
    return {
        "customer": {"X-API-Key": settings.customer_api_key},
        "admin": {"Authorization": f"Bearer {settings.admin_api_key}"},
        "system": {"X-API-Key": settings.system_api_key},
        "auditor": {"X-API-Key": settings.auditor_api_key},
    }


@pytest.fixture()
def make_request():
    def _make(lane=FLAT_LANE, unit_price="100.00", quantity="1", **overrides) -> PricingRequest:
        data = {
            "origin_country": lane[0],
            "destination_country": lane[1],
            "origin_currency": "USD",
            "buyer_currency": "USD",
            "items": [{"name": "sneakers", "quantity": quantity, "unit_price": unit_price}],
        }
        data.update(overrides)
        return PricingRequest.model_validate(data)

    return _make


@pytest.fixture()
def ref():
    def _ref(prefix: str = "pay") -> str:
        return f"{prefix}-{uuid4().hex[:12]}"

    return _ref
