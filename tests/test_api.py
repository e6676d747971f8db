from __future__ import annotations

from decimal import Decimal
from uuid import uuid4


def _pricing(unit_price: str = "100.00", destination: str = "AU") -> dict:
    return {
        "origin_country": "US",
        "destination_country": destination,
        "origin_currency": "USD",
        "buyer_currency": "USD",
        "items": [{"name": "jacket", "quantity": "1", "unit_price": unit_price}],
        "shipping_address": {"city": "Melbourne"},
    }


def _payment(amount: str) -> dict:
    return {
        "event_type": "customer_payment",
        "amount": amount,
        "currency": "USD",
        "gateway_code": "stripe",
        "external_reference": f"api-{uuid4().hex[:12]}",
    }


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_endpoints_require_api_key_and_role(client, auth_headers):
    assert client.post("/quotes", json=_pricing()).status_code == 401
    assert client.post("/quotes", json=_pricing(), headers={"Authorization": "Basic abc"}).status_code == 401
    assert client.post("/quotes", json=_pricing(), headers={"X-API-Key": "wrong"}).status_code == 401

    profile = {
        "profile": {
            "country": "FR",
            "currency": "USD",
            "customs_percent": "5",
            "vat_percent": "20",
        }
    }
    assert client.post("/config/profiles", json=profile, headers=auth_headers["customer"]).status_code == 403
    assert client.post("/config/profiles", json=profile, headers=auth_headers["admin"]).status_code == 201


def test_quote_lifecycle_over_http(client, auth_headers):
    created = client.post("/quotes", json=_pricing(), headers=auth_headers["customer"])
    assert created.status_code == 201
    quote = created.json()
    assert quote["status"] == "pending"
    assert quote["total"] == "100.00"
    assert quote["display_total"] == "$100.00"
    assert quote["breakdown"]["grand_total"] == "100.00"
    quote_id = quote["id"]

    customer_send = client.post(f"/quotes/{quote_id}/send", headers=auth_headers["customer"])
    assert customer_send.status_code == 403

    sent = client.post(f"/quotes/{quote_id}/send", headers=auth_headers["admin"])
    assert sent.status_code == 200
    assert sent.json()["status"] == "sent"
    assert sent.json()["expires_at"] is not None

    approved = client.post(
        f"/quotes/{quote_id}/transitions",
        json={"to_status": "approved"},
        headers=auth_headers["customer"],
    )
    assert approved.status_code == 200

    skipped = client.post(
        f"/quotes/{quote_id}/transitions",
        json={"to_status": "shipped"},
        headers=auth_headers["admin"],
    )
    assert skipped.status_code == 409
    assert skipped.json()["error"] == "invalid_transition"

    paid = client.post(f"/quotes/{quote_id}/payments", json=_payment("100.00"), headers=auth_headers["system"])
    assert paid.status_code == 200
    assert paid.json()["quote_status"] == "paid"
    assert paid.json()["summary"]["payment_status"] == "paid"

    ledger = client.get(f"/quotes/{quote_id}/payments", headers=auth_headers["auditor"])
    assert ledger.status_code == 200
    assert ledger.json()["chain_valid"] is True
    assert len(ledger.json()["entries"]) == 1

    frozen = client.put(
        f"/quotes/{quote_id}/shipping-address",
        json={"shipping_address": {"city": "Perth"}},
        headers=auth_headers["customer"],
    )
    assert frozen.status_code == 409

    transitions = client.get(f"/quotes/{quote_id}/transitions", headers=auth_headers["auditor"]).json()
    assert [t["to"] for t in transitions["transitions"]] == ["pending", "sent", "approved", "paid"]


def test_duplicate_payment_delivery_returns_original(client, auth_headers):
    quote_id = client.post("/quotes", json=_pricing("30.00"), headers=auth_headers["customer"]).json()["id"]
    payment = _payment("30.00")

    first = client.post(f"/quotes/{quote_id}/payments", json=payment, headers=auth_headers["system"])
    second = client.post(f"/quotes/{quote_id}/payments", json=payment, headers=auth_headers["system"])

    assert first.status_code == second.status_code == 200
    assert second.json()["duplicate"] is True
    assert second.json()["entry"]["event_id"] == first.json()["entry"]["event_id"]
    assert second.json()["summary"]["amount_paid"] == "30.00"


def test_refund_flow_over_http(client, auth_headers):
    quote_id = client.post("/quotes", json=_pricing(), headers=auth_headers["customer"]).json()["id"]
    client.post(f"/quotes/{quote_id}/payments", json=_payment("100.00"), headers=auth_headers["system"])

    requested = client.post(
        f"/quotes/{quote_id}/refunds",
        json={"amount": "50.00", "reason": "quality_issue"},
        headers=auth_headers["customer"],
    )
    assert requested.status_code == 201
    refund_id = requested.json()["id"]

    assert client.post(f"/refunds/{refund_id}/approve", json={}, headers=auth_headers["customer"]).status_code == 403
    approved = client.post(f"/refunds/{refund_id}/approve", json={}, headers=auth_headers["admin"])
    assert approved.json()["approved_amount"] == "50.00"

    entry = {"amount": "30.00", "gateway_code": "stripe", "external_reference": f"re-{uuid4().hex[:12]}"}
    ok = client.post(f"/refunds/{refund_id}/entries", json=entry, headers=auth_headers["system"])
    assert ok.status_code == 200
    assert ok.json()["refund"]["status"] == "processed"

    entry["external_reference"] = f"re-{uuid4().hex[:12]}"
    too_much = client.post(f"/refunds/{refund_id}/entries", json=entry, headers=auth_headers["system"])
    assert too_much.status_code == 409
    body = too_much.json()
    assert body["error"] == "refund_exceeds_approved"
    assert body["field"] == "amount"
    assert body["context"]["approved"] == "50.00"

    listing = client.get(f"/quotes/{quote_id}/refunds", headers=auth_headers["auditor"]).json()
    assert listing["refunds"][0]["status"] == "processed"


def test_configuration_errors_map_to_service_unavailable(client, auth_headers):
    missing = client.post("/quotes/preview", json=_pricing(destination="ZZ"), headers=auth_headers["customer"])
    assert missing.status_code == 503
    assert missing.json()["error"] == "configuration_missing"


def test_config_routes_and_rates(client, auth_headers):
    route = {
        "origin_country": "US",
        "destination_country": "CA",
        "currency": "USD",
        "base_shipping_cost": "12.50",
        "weight_tiers": [{"min_kg": "0", "max_kg": "2", "rate_per_kg": "4"}],
        "customs_tiers": [
            {"rule_name": "Gifts", "price_max": "60", "customs_percent": "0", "vat_percent": "5", "priority_order": 1}
        ],
        "exchange_rate": "1.35",
        "rate_currency_to": "CAD",
    }
    saved = client.put("/config/routes", json=route, headers=auth_headers["admin"])
    assert saved.status_code == 200
    assert Decimal(saved.json()["base_shipping_cost"]) == Decimal("12.5")
    tier = saved.json()["customs_tiers"][0]
    assert tier["rule_name"] == "Gifts"
    assert tier["logic_type"] == "AND"
    assert Decimal(tier["price_max"]) == Decimal("60")

    resolved = client.get(
        "/config/rates/resolve",
        params={"from_currency": "USD", "to_currency": "CAD", "origin_country": "US", "destination_country": "CA"},
        headers=auth_headers["customer"],
    )
    assert resolved.json()["source"] == "route_override"

    published = client.post(
        "/config/rates",
        json={"currency": "MXN", "rate_from_usd": "17.1"},
        headers=auth_headers["admin"],
    )
    assert published.status_code == 201
    unavailable = client.get(
        "/config/rates/resolve",
        params={"from_currency": "USD", "to_currency": "XTS"},
        headers=auth_headers["customer"],
    )
    assert unavailable.status_code == 503
    assert unavailable.json()["error"] == "rate_unavailable"


def test_maintenance_endpoints(client, auth_headers):
    assert client.post("/maintenance/expire", headers=auth_headers["customer"]).status_code == 403
    swept = client.post("/maintenance/expire", headers=auth_headers["system"])
    assert swept.status_code == 200
    assert "expired" in swept.json()

    repair = client.post("/maintenance/reconcile", params={"repair": "true"}, headers=auth_headers["auditor"])
    assert repair.status_code == 403
    report = client.post("/maintenance/reconcile", headers=auth_headers["auditor"])
    assert report.status_code == 200
    assert report.json()["repair"] is False


def test_payment_errors_use_structured_body(client, auth_headers):
    quote_id = client.post("/quotes", json=_pricing(), headers=auth_headers["customer"]).json()["id"]

    zero = client.post(f"/quotes/{quote_id}/payments", json=_payment("0"), headers=auth_headers["system"])
    assert zero.status_code == 400
    body = zero.json()
    assert body["error"] == "invalid_input"
    assert set(body) == {"error", "detail", "field", "context"}
    assert "must not be zero" in body["context"]["errors"][0]["msg"]

    missing = dict(_payment("10.00"))
    del missing["gateway_code"]
    response = client.post(f"/quotes/{quote_id}/payments", json=missing, headers=auth_headers["system"])
    assert response.status_code == 400
    assert response.json()["field"] == "gateway_code"

    huge = client.post(f"/quotes/{quote_id}/payments", json=_payment("1e30"), headers=auth_headers["system"])
    assert huge.status_code == 422
    assert huge.json()["error"] == "amount_out_of_range"


def test_shipping_address_history_over_http(client, auth_headers):
    quote_id = client.post("/quotes", json=_pricing(), headers=auth_headers["customer"]).json()["id"]
    updated = client.put(
        f"/quotes/{quote_id}/shipping-address",
        json={"shipping_address": {"city": "Geelong"}, "reason": "wrong suburb"},
        headers=auth_headers["customer"],
    )
    assert updated.status_code == 200
    assert updated.json()["shipping_address"] == {"city": "Geelong"}

    history = client.get(f"/quotes/{quote_id}/shipping-address/history", headers=auth_headers["auditor"])
    assert history.status_code == 200
    entries = history.json()["history"]
    assert [entry["change_type"] for entry in entries] == ["create", "update"]
    assert entries[1]["old_address"] == {"city": "Melbourne"}
    assert entries[1]["reason"] == "wrong suburb"

    missing = client.get("/quotes/missing/shipping-address/history", headers=auth_headers["auditor"])
    assert missing.status_code == 404
