from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from landed.core.config import Settings, get_settings
from landed.core.errors import InvalidInput, InvalidTransition, NotFound
from landed.core.security import SYSTEM_ACTOR, Actor
from landed.core.timeutils import as_utc, iso_z, now_utc
from landed.domain import lifecycle
from landed.domain.calculator import CostBreakdown, compute
from landed.domain.money import Money, format_money
from landed.domain.profiles import ProfileRegistry, ProfileVersion, TaxFeeProfile
from landed.domain.rates import RateResolver, ResolvedRate
from landed.domain.routes import RouteRepository, ShippingRoute
from landed.ledger.canonical import sha256_hex
from landed.ledger.events import PaymentEvent
from landed.ledger.locks import lock_quote_row, quote_locks
from landed.ledger.store import LedgerResult, PaymentLedger
from landed.persistence.models import (
    AddressHistoryModel,
    QuoteModel,
    QuoteRevisionModel,
    ShippingRouteModel,
    TransitionLogModel,
)
from landed.quotes.schemas import PricingRequest

logger = logging.getLogger(__name__)

PRICE_ADJUSTMENT_GATEWAY = "price_adjustment"


@dataclass(frozen=True)
class PricedQuote:
    request: PricingRequest
    route_row: ShippingRouteModel
    profile: ProfileVersion
    rate: ResolvedRate
    breakdown: CostBreakdown


def _actor_label(actor: Actor | str) -> str:
    return actor.label if isinstance(actor, Actor) else str(actor)


class QuoteService:
    def __init__(self, session: Session, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self.ledger = PaymentLedger(session, self.settings)
        self.rates = RateResolver(session)
        self.profiles = ProfileRegistry(session)
        self.routes = RouteRepository(session)

    # pricing

    def _price(
        self,
        request: PricingRequest,
        as_of: datetime | None = None,
        profile: ProfileVersion | None = None,
        rate: ResolvedRate | None = None,
    ) -> PricedQuote:
        route_row = self.routes.get_row(request.origin_country, request.destination_country)
        profile = profile or self.profiles.active(request.destination_country, as_of)
        rate = rate or self.rates.resolve(request.origin_currency, request.buyer_currency, as_of, route=route_row)
        breakdown = compute(
            request.line_items(),
            ShippingRoute.from_row(route_row),
            profile.profile,
            rate,
            options=request.options(),
            max_total=self.settings.max_grand_total,
        )
        return PricedQuote(request, route_row, profile, rate, breakdown)

    def preview(self, request: PricingRequest) -> PricedQuote:
        return self._price(request)

    def _snapshot_profile(self, quote: QuoteModel) -> ProfileVersion:
        return ProfileVersion(
            id=quote.profile_id,
            country=quote.destination_country,
            version=int(quote.profile_snapshot.get("_version", 0)),
            effective_from=as_utc(quote.created_at),
            profile=TaxFeeProfile.model_validate(
                {k: v for k, v in quote.profile_snapshot.items() if not k.startswith("_")}
            ),
            values_hash=quote.profile_hash,
        )

    def _add_revision(self, quote: QuoteModel, priced: PricedQuote, reason: str, actor: str) -> QuoteRevisionModel:
        breakdown_dict = priced.breakdown.to_dict()
        revision = QuoteRevisionModel(
            quote_id=quote.id,
            revision=quote.current_revision,
            breakdown=breakdown_dict,
            breakdown_hash=sha256_hex(breakdown_dict),
            reason=reason,
            created_by=actor,
            created_at=now_utc(),
        )
        self.session.add(revision)
        quote.total_minor = priced.breakdown.grand_total_buyer.to_minor()
        quote.rate_snapshot = priced.rate.to_snapshot()
        quote.updated_at = now_utc()
        self.session.flush()
        return revision

    def create_quote(self, request: PricingRequest, actor: Actor | str) -> QuoteModel:
        priced = self._price(request)
        label = _actor_label(actor)
        now = now_utc()
        snapshot = priced.profile.profile.snapshot()
        snapshot["_version"] = priced.profile.version
        quote = QuoteModel(
            status=lifecycle.PENDING,
            origin_country=request.origin_country,
            destination_country=request.destination_country,
            origin_currency=request.origin_currency,
            currency=request.buyer_currency,
            route_id=priced.route_row.id,
            profile_id=priced.profile.id,
            profile_snapshot=snapshot,
            profile_hash=priced.profile.values_hash,
            rate_snapshot=priced.rate.to_snapshot(),
            pricing_request=request.model_dump(mode="json"),
            current_revision=1,
            total_minor=0,
            amount_paid_minor=0,
            payment_status=lifecycle.UNPAID,
            shipping_address=dict(request.shipping_address),
            customer_ref=request.customer_ref,
            created_by=label,
            created_at=now,
            updated_at=now,
        )
        self.session.add(quote)
        self.session.flush()
        self._add_revision(quote, priced, "initial", label)
        self._log_transition(quote, None, lifecycle.PENDING, lifecycle.TRIGGER_AUTO_CALCULATION, label)
        if quote.shipping_address:
            self._log_address(quote, None, "create", label)
        logger.info(
            "quote priced: id=%s route=%s->%s total=%s %s",
            quote.id,
            quote.origin_country,
            quote.destination_country,
            priced.breakdown.grand_total_buyer.quantize().amount,
            quote.currency,
        )
        return quote

    def recalculate(self, quote_id: str, request: PricingRequest, actor: Actor | str) -> QuoteModel:
        with quote_locks.hold(quote_id):
            quote = lock_quote_row(self.session, quote_id)
            if lifecycle.is_frozen(quote.status):
                raise InvalidTransition(
                    f"quote is {quote.status}; its breakdown is frozen, use a price adjustment",
                    field="status",
                    detail={"status": quote.status},
                )
            if quote.status in lifecycle.TERMINAL:
                raise InvalidTransition(f"quote is {quote.status} and cannot be repriced", field="status")
            self._check_same_lane(quote, request)
            # Once sent, the rate captured at send time stays authoritative.
            locked_rate = ResolvedRate.from_snapshot(quote.rate_snapshot) if quote.rate_locked_at else None
            priced = self._price(request, rate=locked_rate)
            label = _actor_label(actor)
            quote.current_revision += 1
            quote.pricing_request = request.model_dump(mode="json")
            snapshot = priced.profile.profile.snapshot()
            snapshot["_version"] = priced.profile.version
            quote.profile_id = priced.profile.id
            quote.profile_snapshot = snapshot
            quote.profile_hash = priced.profile.values_hash
            self._add_revision(quote, priced, "recalculation", label)
            self.ledger.refresh_cache(quote)
            return quote

    def _check_same_lane(self, quote: QuoteModel, request: PricingRequest) -> None:
        for name in ("origin_country", "destination_country", "origin_currency"):
            if getattr(request, name) != getattr(quote, name):
                raise InvalidInput(f"{name} cannot change on an existing quote", field=name)
        if request.buyer_currency != quote.currency:
            raise InvalidInput("buyer_currency cannot change on an existing quote", field="buyer_currency")

    def adjust_price(self, quote_id: str, request: PricingRequest, reason: str, actor: Actor | str) -> QuoteModel:
        """Reprice a quote whose breakdown is frozen.

        Uses the quote's own profile and rate snapshots, stores a new revision
        and appends a pending ``adjustment`` ledger entry for the delta so the
        change stays visible next to the payments it affects.
        """
        with quote_locks.hold(quote_id):
            quote = lock_quote_row(self.session, quote_id)
            if quote.status in lifecycle.TERMINAL and quote.status != lifecycle.COMPLETED:
                raise InvalidTransition(f"quote is {quote.status} and cannot be adjusted", field="status")
            self._check_same_lane(quote, request)
            label = _actor_label(actor)
            previous_total = quote.total_minor
            priced = self._price(
                request,
                profile=self._snapshot_profile(quote),
                rate=ResolvedRate.from_snapshot(quote.rate_snapshot),
            )
            quote.current_revision += 1
            quote.pricing_request = request.model_dump(mode="json")
            revision = self._add_revision(quote, priced, "price_adjustment", label)

            delta_minor = quote.total_minor - previous_total
            if delta_minor != 0:
                event = PaymentEvent(
                    event_type="adjustment",
                    amount=Money.from_minor(delta_minor, quote.currency).amount,
                    currency=quote.currency,
                    gateway_code=PRICE_ADJUSTMENT_GATEWAY,
                    external_reference=f"{quote.id}:rev{revision.revision}",
                    status="pending",
                    metadata={
                        "reason": reason,
                        "revision": revision.revision,
                        "previous_total_minor": previous_total,
                        "new_total_minor": quote.total_minor,
                    },
                )
                self.ledger.record_payment(quote.id, event, actor=label)
            else:
                self.ledger.refresh_cache(quote)
            logger.info(
                "price adjusted: quote=%s revision=%s delta_minor=%s reason=%s",
                quote.id,
                revision.revision,
                delta_minor,
                reason,
            )
            return quote

    # lifecycle

    def get(self, quote_id: str) -> QuoteModel:
        quote = self.session.get(QuoteModel, quote_id)
        if quote is None:
            raise NotFound(f"quote {quote_id} not found", field="quote_id")
        return quote

    def current_breakdown(self, quote: QuoteModel) -> CostBreakdown:
        revision = self.session.scalar(
            select(QuoteRevisionModel)
            .where(QuoteRevisionModel.quote_id == quote.id)
            .where(QuoteRevisionModel.revision == quote.current_revision)
        )
        if revision is None:
            raise NotFound(f"revision {quote.current_revision} of quote {quote.id} not found", field="revision")
        return CostBreakdown.from_dict(revision.breakdown)

    def revisions(self, quote_id: str) -> list[QuoteRevisionModel]:
        stmt = (
            select(QuoteRevisionModel)
            .where(QuoteRevisionModel.quote_id == quote_id)
            .order_by(QuoteRevisionModel.revision.asc())
        )
        return list(self.session.scalars(stmt).all())

    def transition_log(self, quote_id: str) -> list[TransitionLogModel]:
        stmt = (
            select(TransitionLogModel)
            .where(TransitionLogModel.quote_id == quote_id)
            .order_by(TransitionLogModel.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def address_history(self, quote_id: str) -> list[AddressHistoryModel]:
        self.get(quote_id)
        stmt = (
            select(AddressHistoryModel)
            .where(AddressHistoryModel.quote_id == quote_id)
            .order_by(AddressHistoryModel.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def _log_address(
        self,
        quote: QuoteModel,
        old_address: dict[str, Any] | None,
        change_type: str,
        actor: str,
        reason: str | None = None,
    ) -> AddressHistoryModel:
        entry = AddressHistoryModel(
            quote_id=quote.id,
            old_address=old_address,
            new_address=dict(quote.shipping_address or {}),
            change_type=change_type,
            change_reason=reason,
            changed_by=actor,
            changed_at=now_utc(),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def _log_transition(
        self,
        quote: QuoteModel,
        from_status: str | None,
        to_status: str,
        trigger: str,
        actor: str,
        meta: dict[str, Any] | None = None,
    ) -> TransitionLogModel:
        entry = TransitionLogModel(
            quote_id=quote.id,
            from_status=from_status,
            to_status=to_status,
            trigger=trigger,
            actor=actor,
            meta=meta or {},
            changed_at=now_utc(),
        )
        self.session.add(entry)
        self.session.flush()
        logger.info(
            "quote transition: id=%s %s -> %s trigger=%s actor=%s",
            quote.id,
            from_status,
            to_status,
            trigger,
            actor,
        )
        return entry

    def _conditional_update(self, quote_id: str, from_status: str, values: dict[str, Any]) -> bool:
        stmt = (
            update(QuoteModel)
            .where(QuoteModel.id == quote_id)
            .where(QuoteModel.status == from_status)
            .values(**values, updated_at=now_utc())
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def _lock_rate_on_send(self, quote: QuoteModel, actor: str) -> dict[str, Any]:
        route_row = self.session.get(ShippingRouteModel, quote.route_id) if quote.route_id else None
        current = ResolvedRate.from_snapshot(quote.rate_snapshot)
        fresh = self.rates.resolve(quote.origin_currency, quote.currency, route=route_row)
        if fresh.rate != current.rate or fresh.source != current.source:
            request = PricingRequest.model_validate(quote.pricing_request)
            priced = self._price(request, profile=self._snapshot_profile(quote), rate=fresh)
            quote.current_revision += 1
            self._add_revision(quote, priced, "rate_locked", actor)
            self.ledger.refresh_cache(quote)
        else:
            quote.rate_snapshot = fresh.to_snapshot()
        quote.rate_locked_at = fresh.as_of
        return {"rate": format(fresh.rate, "f"), "rate_source": fresh.source}

    def transition(
        self,
        quote_id: str,
        to_status: str,
        actor: Actor | str,
        trigger: str = lifecycle.TRIGGER_MANUAL,
        meta: dict[str, Any] | None = None,
    ) -> QuoteModel:
        label = _actor_label(actor)
        with quote_locks.hold(quote_id):
            quote = lock_quote_row(self.session, quote_id)
            from_status = quote.status
            payment_status = self.ledger.summary(quote).payment_status
            lifecycle.check_transition(from_status, to_status, payment_status)

            meta = dict(meta or {})
            values: dict[str, Any] = {"status": to_status}
            if to_status == lifecycle.SENT:
                meta.update(self._lock_rate_on_send(quote, label))
                expires_at = now_utc() + timedelta(days=self.settings.quote_validity_days)
                values["expires_at"] = expires_at
                meta["expires_at"] = iso_z(expires_at)

            self.session.flush()
            if not self._conditional_update(quote.id, from_status, values):
                raise InvalidTransition(
                    "quote status changed concurrently",
                    field="status",
                    detail={"expected": from_status, "to": to_status},
                )
            self.session.refresh(quote)
            self._log_transition(quote, from_status, to_status, trigger, label, meta)
            return quote

    def send_quote(self, quote_id: str, actor: Actor | str) -> QuoteModel:
        return self.transition(quote_id, lifecycle.SENT, actor, trigger=lifecycle.TRIGGER_QUOTE_SENT)

    def expire_stale_quotes(self, now: datetime | None = None) -> list[str]:
        """Move every ``sent`` quote past its expiry to ``expired``.

        Safe to run repeatedly and alongside user transitions: each row is
        flipped by a conditional update that no-ops once the status moved on.
        """
        now = as_utc(now) or now_utc()
        candidates = self.session.scalars(
            select(QuoteModel.id)
            .where(QuoteModel.status == lifecycle.SENT)
            .where(QuoteModel.expires_at.is_not(None))
            .where(QuoteModel.expires_at < now)
        ).all()

        expired: list[str] = []
        for quote_id in candidates:
            with quote_locks.hold(quote_id):
                if not self._conditional_update(quote_id, lifecycle.SENT, {"status": lifecycle.EXPIRED}):
                    continue
                quote = self.get(quote_id)
                self.session.refresh(quote)
                self._log_transition(
                    quote,
                    lifecycle.SENT,
                    lifecycle.EXPIRED,
                    lifecycle.TRIGGER_AUTO_EXPIRATION,
                    SYSTEM_ACTOR.label,
                    {"swept_at": iso_z(now)},
                )
                expired.append(quote_id)
        logger.info("expiration sweep: candidates=%s expired=%s", len(candidates), len(expired))
        return expired

    def update_shipping_address(
        self,
        quote_id: str,
        address: dict[str, Any],
        actor: Actor | str,
        reason: str | None = None,
    ) -> QuoteModel:
        with quote_locks.hold(quote_id):
            quote = lock_quote_row(self.session, quote_id)
            if lifecycle.is_frozen(quote.status):
                raise InvalidTransition(
                    f"shipping address is frozen once a quote is {quote.status}",
                    field="shipping_address",
                    detail={"status": quote.status},
                )
            previous = dict(quote.shipping_address or {})
            quote.shipping_address = dict(address)
            quote.updated_at = now_utc()
            self._log_address(quote, previous, "update", _actor_label(actor), reason)
            logger.info("shipping address updated: quote=%s actor=%s", quote.id, _actor_label(actor))
            return quote

    # payments

    def record_payment(self, quote_id: str, event: PaymentEvent, actor: Actor | str) -> LedgerResult:
        label = _actor_label(actor)
        with quote_locks.hold(quote_id):
            result = self.ledger.record_payment(quote_id, event, actor=label)
            if result.duplicate:
                return result
            quote = self.get(quote_id)
            status = result.summary.payment_status
            meta = {"payment_status": status, "event_id": result.entry.event_id}
            if status in lifecycle.SETTLED and quote.status in (lifecycle.APPROVED, lifecycle.PAYMENT_PENDING):
                self.transition(quote_id, lifecycle.PAID, label, lifecycle.TRIGGER_PAYMENT_RECEIVED, meta)
            elif status == lifecycle.PARTIAL and quote.status == lifecycle.APPROVED:
                self.transition(quote_id, lifecycle.PAYMENT_PENDING, label, lifecycle.TRIGGER_PAYMENT_RECEIVED, meta)
            return result


def _display_places(quote: QuoteModel) -> int | None:
    # A profile override wins over the buyer currency's own scale.
    places = (quote.profile_snapshot or {}).get("decimal_places")
    if places is None:
        places = (quote.rate_snapshot or {}).get("display_places")
    return places


def quote_to_dict(quote: QuoteModel, breakdown: CostBreakdown | None = None, summary=None) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": quote.id,
        "status": quote.status,
        "origin_country": quote.origin_country,
        "destination_country": quote.destination_country,
        "origin_currency": quote.origin_currency,
        "currency": quote.currency,
        "revision": quote.current_revision,
        "profile_id": quote.profile_id,
        "profile_hash": quote.profile_hash,
        "exchange_rate": quote.rate_snapshot,
        "rate_locked_at": iso_z(quote.rate_locked_at),
        "total": format(Money.from_minor(quote.total_minor, quote.currency).amount, "f"),
        "amount_paid": format(Money.from_minor(quote.amount_paid_minor, quote.currency).amount, "f"),
        "payment_status": quote.payment_status,
        "display_total": format_money(Money.from_minor(quote.total_minor, quote.currency), _display_places(quote)),
        "shipping_address": quote.shipping_address,
        "customer_ref": quote.customer_ref,
        "expires_at": iso_z(quote.expires_at),
        "created_at": iso_z(quote.created_at),
        "updated_at": iso_z(quote.updated_at),
    }
    if breakdown is not None:
        data["breakdown"] = breakdown.to_dict()
    if summary is not None:
        data["payments"] = summary.to_dict()
    return data


def transition_to_dict(entry: TransitionLogModel) -> dict[str, Any]:
    return {
        "from": entry.from_status,
        "to": entry.to_status,
        "trigger": entry.trigger,
        "actor": entry.actor,
        "changed_at": iso_z(entry.changed_at),
        "meta": entry.meta,
    }


def address_change_to_dict(entry: AddressHistoryModel) -> dict[str, Any]:
    return {
        "old_address": entry.old_address,
        "new_address": entry.new_address,
        "change_type": entry.change_type,
        "reason": entry.change_reason,
        "changed_by": entry.changed_by,
        "changed_at": iso_z(entry.changed_at),
    }
