from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from landed.core.config import Settings, get_settings
from landed.core.errors import (
    CurrencyMismatch,
    DuplicateEvent,
    InvalidInput,
    InvalidTransition,
    NotFound,
    RefundExceedsApproved,
)
from landed.core.timeutils import now_utc
from landed.domain.lifecycle import derive_payment_status
from landed.domain.money import Money, check_magnitude
from landed.domain.rates import ResolvedRate
from landed.ledger.canonical import GENESIS_HASH, sha256_hex
from landed.ledger.events import PaymentEvent
from landed.ledger.locks import lock_quote_row, quote_locks
from landed.persistence.models import PaymentEventModel, QuoteModel, RefundRequestModel

logger = logging.getLogger(__name__)

REFUNDABLE_REQUEST_STATUSES = frozenset({"approved", "processed"})


@dataclass(frozen=True)
class PaymentSummary:
    quote_id: str
    total: Money
    amount_paid: Money
    refunded: Money
    pending: Money
    payment_status: str

    @property
    def overpayment_amount(self) -> Money:
        excess = self.amount_paid - self.total
        return excess if excess.amount > 0 else Money.zero(self.total.currency)

    @property
    def balance_due(self) -> Money:
        due = self.total - self.amount_paid
        return due if due.amount > 0 else Money.zero(self.total.currency)

    def to_dict(self) -> dict[str, Any]:
        return {
            "quote_id": self.quote_id,
            "currency": self.total.currency,
            "total": format(self.total.amount, "f"),
            "amount_paid": format(self.amount_paid.amount, "f"),
            "refunded": format(self.refunded.amount, "f"),
            "pending": format(self.pending.amount, "f"),
            "balance_due": format(self.balance_due.amount, "f"),
            "overpayment_amount": format(self.overpayment_amount.amount, "f"),
            "payment_status": self.payment_status,
        }


@dataclass(frozen=True)
class LedgerResult:
    entry: PaymentEventModel
    duplicate: bool
    summary: PaymentSummary


def _hashable_meta(meta: dict[str, Any]) -> Any:
    # JSON floats become Decimals so the canonical encoder accepts them.
    return json.loads(json.dumps(meta or {}), parse_float=Decimal)


def entry_hash_input(row: PaymentEventModel) -> dict[str, Any]:
    return {
        "event_id": row.event_id,
        "quote_id": row.quote_id,
        "event_type": row.event_type,
        "amount_minor": row.amount_minor,
        "currency": row.currency,
        "gateway_code": row.gateway_code,
        "external_reference": row.external_reference,
        "status": row.status,
        "refund_request_id": row.refund_request_id,
        "actor": row.actor,
        "meta": _hashable_meta(row.meta),
        "occurred_at": row.occurred_at,
        "prev_hash": row.prev_hash,
    }


def entry_to_dict(row: PaymentEventModel) -> dict[str, Any]:
    return {
        "seq_id": row.seq_id,
        "event_id": row.event_id,
        "quote_id": row.quote_id,
        "event_type": row.event_type,
        "amount": format(Money.from_minor(row.amount_minor, row.currency).amount, "f"),
        "currency": row.currency,
        "gateway_code": row.gateway_code,
        "external_reference": row.external_reference,
        "status": row.status,
        "refund_request_id": row.refund_request_id,
        "actor": row.actor,
        "metadata": row.meta,
        "occurred_at": row.occurred_at.isoformat(),
        "prev_hash": row.prev_hash,
        "entry_hash": row.entry_hash,
    }


class PaymentLedger:
    """Append-only payment ledger keyed by quote.

    Amount paid and payment status are always derived from the completed
    entries; the columns cached on the quote row are refreshed on every write
    and checked for drift by reconciliation.
    """

    def __init__(self, session: Session, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    def _find_existing(self, event: PaymentEvent) -> PaymentEventModel | None:
        gateway_code, external_reference, status = event.idempotency_key
        stmt = (
            select(PaymentEventModel)
            .where(PaymentEventModel.gateway_code == gateway_code)
            .where(PaymentEventModel.external_reference == external_reference)
            .where(PaymentEventModel.status == status)
        )
        return self.session.scalar(stmt)

    def _latest_entry_hash(self, quote_id: str) -> str:
        stmt = (
            select(PaymentEventModel.entry_hash)
            .where(PaymentEventModel.quote_id == quote_id)
            .order_by(desc(PaymentEventModel.seq_id))
            .limit(1)
        )
        return self.session.scalar(stmt) or GENESIS_HASH

    def entries(self, quote_id: str) -> list[PaymentEventModel]:
        stmt = (
            select(PaymentEventModel)
            .where(PaymentEventModel.quote_id == quote_id)
            .order_by(PaymentEventModel.seq_id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def raw_paid_minor(self, quote_id: str) -> int:
        stmt = (
            select(func.coalesce(func.sum(PaymentEventModel.amount_minor), 0))
            .where(PaymentEventModel.quote_id == quote_id)
            .where(PaymentEventModel.status == "completed")
        )
        return int(self.session.scalar(stmt) or 0)

    def refund_exposure_minor(
        self,
        refund_request_id: str,
        exclude: tuple[str, str] | None = None,
    ) -> int:
        """Positive minor units already committed against a refund request.

        Per (gateway_code, external_reference): a completed entry counts, a
        failed one cancels a pending delivery, and a lone pending entry counts.
        """
        stmt = select(PaymentEventModel).where(PaymentEventModel.refund_request_id == refund_request_id)
        outcome: dict[tuple[str, str], dict[str, int]] = {}
        for row in self.session.scalars(stmt).all():
            key = (row.gateway_code, row.external_reference)
            if key == exclude:
                continue
            outcome.setdefault(key, {})[row.status] = abs(row.amount_minor)

        exposure = 0
        for statuses in outcome.values():
            if "completed" in statuses:
                exposure += statuses["completed"]
            elif "failed" not in statuses:
                exposure += statuses.get("pending", 0)
        return exposure

    def summary(self, quote: QuoteModel) -> PaymentSummary:
        currency = quote.currency
        completed_minor = 0
        refunded_minor = 0
        pending_minor = 0
        settled: set[tuple[str, str]] = set()
        pending_rows: list[PaymentEventModel] = []
        for row in self.entries(quote.id):
            key = (row.gateway_code, row.external_reference)
            if row.status == "completed":
                completed_minor += row.amount_minor
                if row.event_type == "refund":
                    refunded_minor += -row.amount_minor
                settled.add(key)
            elif row.status == "failed":
                settled.add(key)
            else:
                pending_rows.append(row)
        for row in pending_rows:
            if (row.gateway_code, row.external_reference) not in settled:
                pending_minor += row.amount_minor

        total = Money.from_minor(quote.total_minor, currency)
        paid = Money.from_minor(completed_minor, currency)
        return PaymentSummary(
            quote_id=quote.id,
            total=total,
            amount_paid=paid,
            refunded=Money.from_minor(refunded_minor, currency),
            pending=Money.from_minor(pending_minor, currency),
            payment_status=derive_payment_status(paid.amount, total.amount, self.settings.payment_epsilon),
        )

    def amount_ceiling(self, quote: QuoteModel) -> Decimal:
        """Largest single entry accepted, in the quote currency."""
        rate = ResolvedRate.from_snapshot(quote.rate_snapshot).rate
        return self.settings.max_grand_total * rate

    def refresh_cache(self, quote: QuoteModel) -> None:
        raw = self.raw_paid_minor(quote.id)
        quote.amount_paid_minor = raw
        quote.payment_status = derive_payment_status(
            Money.from_minor(raw, quote.currency).amount,
            Money.from_minor(quote.total_minor, quote.currency).amount,
            self.settings.payment_epsilon,
        )
        quote.updated_at = now_utc()
        self.session.flush()

    def _check_refund(self, quote: QuoteModel, event: PaymentEvent, amount_minor: int) -> None:
        request = self.session.get(RefundRequestModel, event.refund_request_id)
        if request is None or request.quote_id != quote.id:
            raise NotFound(
                f"refund request {event.refund_request_id} not found for quote {quote.id}",
                field="refund_request_id",
            )
        if request.status not in REFUNDABLE_REQUEST_STATUSES:
            raise InvalidTransition(
                f"refund request is {request.status}; entries require an approved request",
                field="refund_request_id",
                detail={"refund_request_id": request.id, "status": request.status},
            )
        if event.status == "failed":
            return
        approved = int(request.approved_minor or 0)
        # The incoming reference replaces any earlier delivery of itself.
        already = self.refund_exposure_minor(
            request.id, exclude=(event.gateway_code, event.external_reference)
        )
        if already + abs(amount_minor) > approved:
            logger.warning(
                "refund entry rejected: request=%s approved=%s already=%s attempted=%s",
                request.id,
                approved,
                already,
                abs(amount_minor),
            )
            raise RefundExceedsApproved(
                "refund entries would exceed the approved amount",
                field="amount",
                detail={
                    "refund_request_id": request.id,
                    "approved": format(Money.from_minor(approved, request.currency).amount, "f"),
                    "already_refunded": format(Money.from_minor(already, request.currency).amount, "f"),
                    "attempted": format(Money.from_minor(abs(amount_minor), request.currency).amount, "f"),
                },
            )

    def _insert(self, quote: QuoteModel, event: PaymentEvent, amount_minor: int, actor: str) -> PaymentEventModel:
        row = PaymentEventModel(
            event_id=str(uuid4()),
            quote_id=quote.id,
            event_type=event.event_type,
            amount_minor=amount_minor,
            currency=event.currency,
            gateway_code=event.gateway_code,
            external_reference=event.external_reference,
            status=event.status,
            refund_request_id=event.refund_request_id,
            actor=actor,
            meta=dict(event.metadata),
            occurred_at=event.occurred_at,
            created_at=now_utc(),
            prev_hash=self._latest_entry_hash(quote.id),
            entry_hash="",
        )
        row.entry_hash = sha256_hex(entry_hash_input(row))
        try:
            with self.session.begin_nested():
                self.session.add(row)
                self.session.flush()
        except IntegrityError as exc:
            raise DuplicateEvent(
                "payment event already recorded",
                field="external_reference",
                detail={"gateway_code": event.gateway_code, "external_reference": event.external_reference},
            ) from exc
        return row

    def record_payment(self, quote_id: str, event: PaymentEvent, actor: str = "system") -> LedgerResult:
        with quote_locks.hold(quote_id):
            quote = lock_quote_row(self.session, quote_id)

            existing = self._find_existing(event)
            if existing is None:
                if event.currency != quote.currency:
                    raise CurrencyMismatch(
                        f"payment currency {event.currency} differs from quote currency {quote.currency}",
                        field="currency",
                        detail={"expected": quote.currency, "actual": event.currency},
                    )
                amount = Money(event.amount, event.currency)
                check_magnitude(amount, self.amount_ceiling(quote))
                amount_minor = amount.to_minor()
                if amount_minor == 0:
                    raise InvalidInput("amount rounds to zero in the quote currency", field="amount")
                if event.event_type == "refund":
                    self._check_refund(quote, event, amount_minor)
                try:
                    row = self._insert(quote, event, amount_minor, actor)
                except DuplicateEvent:
                    existing = self._find_existing(event)
                    if existing is None:
                        raise
                else:
                    self.refresh_cache(quote)
                    logger.info(
                        "ledger entry recorded: quote=%s type=%s amount_minor=%s status=%s ref=%s/%s",
                        quote.id,
                        row.event_type,
                        row.amount_minor,
                        row.status,
                        row.gateway_code,
                        row.external_reference,
                    )
                    return LedgerResult(entry=row, duplicate=False, summary=self.summary(quote))

            if existing.quote_id != quote.id:
                raise InvalidInput(
                    "external reference already recorded against another quote",
                    field="external_reference",
                    detail={"quote_id": existing.quote_id},
                )
            logger.info(
                "duplicate payment delivery absorbed: quote=%s ref=%s/%s status=%s",
                quote.id,
                existing.gateway_code,
                existing.external_reference,
                existing.status,
            )
            return LedgerResult(entry=existing, duplicate=True, summary=self.summary(quote))

    def verify_chain(self, quote_id: str) -> bool:
        prev = GENESIS_HASH
        for row in self.entries(quote_id):
            if row.prev_hash != prev:
                return False
            if sha256_hex(entry_hash_input(row)) != row.entry_hash:
                return False
            prev = row.entry_hash
        return True
