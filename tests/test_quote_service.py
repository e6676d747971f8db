from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from landed.core.errors import ConfigurationMissing, InvalidTransition
from landed.core.timeutils import as_utc, now_utc
from landed.domain import lifecycle
from landed.domain.rates import RateResolver
from landed.ledger.events import PaymentEvent
from landed.persistence.models import QuoteModel
from landed.quotes.service import QuoteService

ADMIN = "admin:test"
CUSTOMER = "customer:test"


def _pay(amount: str, reference: str) -> PaymentEvent:
    return PaymentEvent(
        event_type="customer_payment",
        amount=Decimal(amount),
        currency="USD",
        gateway_code="stripe",
        external_reference=reference,
    )


def _approved_quote(service: QuoteService, request):
    quote = service.create_quote(request, CUSTOMER)
    service.send_quote(quote.id, ADMIN)
    service.transition(quote.id, lifecycle.APPROVED, CUSTOMER)
    return quote


def test_create_quote_persists_revision_and_initial_transition(session, make_request):
    service = QuoteService(session)
    quote = service.create_quote(make_request(lane=("US", "GB")), CUSTOMER)

    assert quote.status == lifecycle.PENDING
    assert quote.current_revision == 1
    breakdown = service.current_breakdown(quote)
    assert breakdown.purchase_tax.amount == Decimal("8.88")
    assert breakdown.customs_amount.amount == Decimal("21.58")
    assert quote.total_minor == breakdown.grand_total_buyer.to_minor()

    log = service.transition_log(quote.id)
    assert [(e.from_status, e.to_status, e.trigger) for e in log] == [
        (None, lifecycle.PENDING, lifecycle.TRIGGER_AUTO_CALCULATION)
    ]


def test_preview_does_not_persist(session, make_request):
    before = session.scalar(select(func.count()).select_from(QuoteModel))
    priced = QuoteService(session).preview(make_request(unit_price="42.00"))
    assert priced.breakdown.grand_total.amount == Decimal("42.00")
    assert session.scalar(select(func.count()).select_from(QuoteModel)) == before


def test_missing_route_is_configuration_error(session, make_request):
    with pytest.raises(ConfigurationMissing):
        QuoteService(session).preview(make_request(lane=("US", "ZZ")))


def test_send_sets_expiry_and_locks_rate(session, make_request):
    service = QuoteService(session)
    quote = service.create_quote(make_request(), CUSTOMER)

    service.send_quote(quote.id, ADMIN)

    assert quote.status == lifecycle.SENT
    assert quote.rate_locked_at is not None
    expected = now_utc() + timedelta(days=service.settings.quote_validity_days)
    assert abs(as_utc(quote.expires_at) - expected) < timedelta(minutes=1)
    assert service.transition_log(quote.id)[-1].trigger == lifecycle.TRIGGER_QUOTE_SENT


def test_send_reprices_when_rate_moved(session, make_request):
    resolver = RateResolver(session)
    resolver.publish_rate("AUD", "1.50", effective_from=now_utc() - timedelta(hours=1))
    service = QuoteService(session)
    quote = service.create_quote(make_request(buyer_currency="AUD"), CUSTOMER)
    assert quote.total_minor == 15000

    resolver.publish_rate("AUD", "1.60", effective_from=now_utc() - timedelta(seconds=1))
    service.send_quote(quote.id, ADMIN)

    assert quote.current_revision == 2
    assert quote.total_minor == 16000
    assert [r.reason for r in service.revisions(quote.id)] == ["initial", "rate_locked"]
    assert Decimal(quote.rate_snapshot["rate"]) == Decimal("1.6")


def test_invalid_transition_is_rejected_and_not_logged(session, make_request):
    service = QuoteService(session)
    quote = service.create_quote(make_request(), CUSTOMER)

    with pytest.raises(InvalidTransition):
        service.transition(quote.id, lifecycle.SHIPPED, ADMIN)
    assert quote.status == lifecycle.PENDING
    assert len(service.transition_log(quote.id)) == 1


def test_expiration_sweep_expires_each_quote_once(session, make_request):
    service = QuoteService(session)
    quote = service.create_quote(make_request(), CUSTOMER)
    service.send_quote(quote.id, ADMIN)
    later = now_utc() + timedelta(days=service.settings.quote_validity_days + 1)

    first = service.expire_stale_quotes(now=later)
    second = service.expire_stale_quotes(now=later)

    assert quote.id in first
    assert quote.id not in second
    session.refresh(quote)
    assert quote.status == lifecycle.EXPIRED
    expirations = [e for e in service.transition_log(quote.id) if e.to_status == lifecycle.EXPIRED]
    assert len(expirations) == 1
    assert expirations[0].trigger == lifecycle.TRIGGER_AUTO_EXPIRATION
    assert expirations[0].actor == "system:scheduler"


def test_sweep_leaves_quotes_inside_validity_window(session, make_request):
    service = QuoteService(session)
    quote = service.create_quote(make_request(), CUSTOMER)
    service.send_quote(quote.id, ADMIN)

    assert quote.id not in service.expire_stale_quotes()
    session.refresh(quote)
    assert quote.status == lifecycle.SENT

    deadline = as_utc(quote.expires_at)
    assert quote.id not in service.expire_stale_quotes(now=deadline)
    assert quote.id in service.expire_stale_quotes(now=deadline + timedelta(microseconds=1))


def test_payments_drive_paid_transition(session, make_request, ref):
    service = QuoteService(session)
    quote = _approved_quote(service, make_request(unit_price="100.00"))

    service.record_payment(quote.id, _pay("40.00", ref()), "system:gateway")
    assert quote.status == lifecycle.PAYMENT_PENDING

    service.record_payment(quote.id, _pay("60.00", ref()), "system:gateway")
    assert quote.status == lifecycle.PAID
    assert quote.payment_status == "paid"

    triggers = [e.trigger for e in service.transition_log(quote.id)]
    assert triggers[-2:] == [lifecycle.TRIGGER_PAYMENT_RECEIVED, lifecycle.TRIGGER_PAYMENT_RECEIVED]


def test_paid_quote_is_frozen_except_price_adjustment(session, make_request, ref):
    service = QuoteService(session)
    quote = _approved_quote(service, make_request(unit_price="100.00"))
    service.record_payment(quote.id, _pay("100.00", ref()), "system:gateway")
    assert quote.status == lifecycle.PAID

    with pytest.raises(InvalidTransition):
        service.recalculate(quote.id, make_request(unit_price="120.00"), ADMIN)
    with pytest.raises(InvalidTransition):
        service.update_shipping_address(quote.id, {"line1": "New Street 1"}, CUSTOMER)

    service.adjust_price(quote.id, make_request(unit_price="120.00"), "customs reassessed", ADMIN)

    assert quote.status == lifecycle.PAID
    assert quote.current_revision == 2
    assert quote.total_minor == 12000
    assert quote.amount_paid_minor == 10000
    assert quote.payment_status == "partial"

    adjustments = [e for e in service.ledger.entries(quote.id) if e.event_type == "adjustment"]
    assert len(adjustments) == 1
    assert adjustments[0].amount_minor == 2000
    assert adjustments[0].status == "pending"
    assert adjustments[0].external_reference == f"{quote.id}:rev2"


def test_shipping_address_editable_before_payment(session, make_request):
    service = QuoteService(session)
    quote = service.create_quote(make_request(), CUSTOMER)

    service.update_shipping_address(quote.id, {"line1": "1 Harbour St", "city": "Sydney"}, CUSTOMER)
    assert quote.shipping_address["city"] == "Sydney"


def test_address_changes_are_kept_as_history(session, make_request):
    service = QuoteService(session)
    quote = service.create_quote(make_request(shipping_address={"city": "Perth"}), CUSTOMER)

    service.update_shipping_address(quote.id, {"city": "Sydney"}, CUSTOMER, reason="moved")
    service.update_shipping_address(quote.id, {"city": "Hobart"}, ADMIN)

    history = service.address_history(quote.id)
    assert [entry.change_type for entry in history] == ["create", "update", "update"]
    assert history[0].old_address is None
    assert history[0].new_address == {"city": "Perth"}
    assert history[1].old_address == {"city": "Perth"}
    assert history[1].new_address == {"city": "Sydney"}
    assert history[1].change_reason == "moved"
    assert history[2].old_address == {"city": "Sydney"}
    assert history[2].changed_by == ADMIN
    assert quote.shipping_address == {"city": "Hobart"}


def test_fulfilment_path_to_completed(session, make_request, ref):
    service = QuoteService(session)
    quote = _approved_quote(service, make_request(unit_price="10.00"))
    service.record_payment(quote.id, _pay("10.00", ref()), "system:gateway")

    for status in (lifecycle.PROCESSING, lifecycle.ORDERED, lifecycle.SHIPPED, lifecycle.COMPLETED):
        service.transition(quote.id, status, ADMIN)

    assert quote.status == lifecycle.COMPLETED
    with pytest.raises(InvalidTransition):
        service.transition(quote.id, lifecycle.CANCELLED, ADMIN)
