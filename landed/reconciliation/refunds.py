from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from landed.core.config import Settings, get_settings
from landed.core.errors import InvalidInput, InvalidTransition, NotFound
from landed.core.security import Actor
from landed.core.timeutils import iso_z, now_utc
from landed.domain.money import Money, check_magnitude
from landed.ledger.events import PaymentEvent
from landed.ledger.locks import lock_quote_row, quote_locks
from landed.ledger.store import LedgerResult, PaymentLedger
from landed.persistence.models import PaymentEventModel, QuoteModel, RefundRequestModel

logger = logging.getLogger(__name__)

REQUESTED = "requested"
APPROVED = "approved"
PROCESSED = "processed"
COMPLETED = "completed"
REJECTED = "rejected"
OPEN_STATUSES = frozenset({REQUESTED, APPROVED, PROCESSED})

RefundReason = Literal[
    "customer_request",
    "order_cancellation",
    "product_unavailable",
    "shipping_issue",
    "quality_issue",
    "duplicate_payment",
    "admin_adjustment",
    "system_error",
    "other",
]


class RefundCreate(BaseModel):
    amount: Decimal | None = Field(default=None, description="omit for a full refund of the refundable balance")
    refund_type: Literal["full", "partial"] = "partial"
    reason: RefundReason = "customer_request"
    notes: str | None = None


class RefundApproval(BaseModel):
    approved_amount: Decimal | None = None
    notes: str | None = None


class RefundEntryCreate(BaseModel):
    amount: Decimal
    gateway_code: str = Field(min_length=1, max_length=64)
    external_reference: str = Field(min_length=1, max_length=255)
    status: Literal["pending", "completed", "failed"] = "completed"
    metadata: dict[str, Any] = Field(default_factory=dict)


def _label(actor: Actor | str) -> str:
    return actor.label if isinstance(actor, Actor) else str(actor)


def refund_to_dict(row: RefundRequestModel) -> dict[str, Any]:
    approved = None
    if row.approved_minor is not None:
        approved = format(Money.from_minor(row.approved_minor, row.currency).amount, "f")
    return {
        "id": row.id,
        "quote_id": row.quote_id,
        "currency": row.currency,
        "requested_amount": format(Money.from_minor(row.requested_minor, row.currency).amount, "f"),
        "approved_amount": approved,
        "refund_type": row.refund_type,
        "reason": row.reason,
        "notes": row.notes,
        "status": row.status,
        "requested_by": row.requested_by,
        "approved_by": row.approved_by,
        "created_at": iso_z(row.created_at),
        "approved_at": iso_z(row.approved_at),
        "processed_at": iso_z(row.processed_at),
        "completed_at": iso_z(row.completed_at),
        "rejected_at": iso_z(row.rejected_at),
    }


class RefundWorkflow:
    """requested -> approved -> processed -> completed, or rejected.

    Ledger entries for a request are written through ``PaymentLedger``, which
    enforces the approved ceiling at write time.
    """

    def __init__(self, session: Session, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self.ledger = PaymentLedger(session, self.settings)

    def get(self, request_id: str) -> RefundRequestModel:
        row = self.session.get(RefundRequestModel, request_id)
        if row is None:
            raise NotFound(f"refund request {request_id} not found", field="refund_request_id")
        return row

    def for_quote(self, quote_id: str) -> list[RefundRequestModel]:
        stmt = (
            select(RefundRequestModel)
            .where(RefundRequestModel.quote_id == quote_id)
            .order_by(RefundRequestModel.created_at.asc())
        )
        return list(self.session.scalars(stmt).all())

    def _outstanding_minor(self, quote_id: str) -> int:
        """Refund money promised but not yet taken off the amount paid.

        Completed refund entries already reduce the paid sum, so only the
        unsettled part of each open request counts here. Pending entries stay
        outstanding until they complete or fail.
        """
        outstanding = 0
        for row in self.for_quote(quote_id):
            settled = self._settled_minor(row.id)
            if row.status == REQUESTED:
                outstanding += row.requested_minor
            elif row.status in (APPROVED, PROCESSED):
                outstanding += max(int(row.approved_minor or 0) - settled, 0)
            elif row.status == COMPLETED:
                outstanding += max(self.ledger.refund_exposure_minor(row.id) - settled, 0)
        return outstanding

    def refundable(self, quote_id: str) -> Money:
        quote = self.session.get(QuoteModel, quote_id)
        if quote is None:
            raise NotFound(f"quote {quote_id} not found", field="quote_id")
        paid = self.ledger.raw_paid_minor(quote_id)
        return Money.from_minor(max(paid - self._outstanding_minor(quote_id), 0), quote.currency)

    def request_refund(self, quote_id: str, data: RefundCreate, actor: Actor | str) -> RefundRequestModel:
        with quote_locks.hold(quote_id):
            quote = lock_quote_row(self.session, quote_id)
            refundable = self.refundable(quote_id)
            if data.refund_type == "full" and data.amount is None:
                amount = refundable
            elif data.amount is None:
                raise InvalidInput("amount is required for a partial refund", field="amount")
            else:
                amount = Money(data.amount, quote.currency)
                check_magnitude(amount, self.ledger.amount_ceiling(quote))

            requested_minor = amount.to_minor()
            if requested_minor <= 0:
                raise InvalidInput("refund amount must be positive", field="amount")
            if requested_minor > refundable.to_minor():
                raise InvalidInput(
                    "refund amount exceeds the refundable balance",
                    field="amount",
                    detail={
                        "requested": format(amount.quantize().amount, "f"),
                        "refundable": format(refundable.amount, "f"),
                    },
                )
            row = RefundRequestModel(
                quote_id=quote.id,
                currency=quote.currency,
                requested_minor=requested_minor,
                refund_type=data.refund_type,
                reason=data.reason,
                notes=data.notes,
                status=REQUESTED,
                requested_by=_label(actor),
                created_at=now_utc(),
            )
            self.session.add(row)
            self.session.flush()
            logger.info("refund requested: id=%s quote=%s amount_minor=%s", row.id, quote.id, requested_minor)
            return row

    def approve(self, request_id: str, data: RefundApproval, actor: Actor | str) -> RefundRequestModel:
        row = self.get(request_id)
        with quote_locks.hold(row.quote_id):
            quote = lock_quote_row(self.session, row.quote_id)
            self.session.refresh(row)
            if row.status != REQUESTED:
                raise InvalidTransition(
                    f"cannot approve a refund that is {row.status}",
                    field="status",
                    detail={"status": row.status},
                )
            approved_minor = row.requested_minor
            if data.approved_amount is not None:
                approved = Money(data.approved_amount, row.currency)
                check_magnitude(approved, self.ledger.amount_ceiling(quote), field="approved_amount")
                approved_minor = approved.to_minor()
            if approved_minor <= 0 or approved_minor > row.requested_minor:
                raise InvalidInput(
                    "approved amount must be positive and not above the requested amount",
                    field="approved_amount",
                    detail={
                        "requested": format(Money.from_minor(row.requested_minor, row.currency).amount, "f"),
                    },
                )
            row.approved_minor = approved_minor
            row.status = APPROVED
            row.approved_by = _label(actor)
            row.approved_at = now_utc()
            if data.notes:
                row.notes = data.notes
            self.session.flush()
            logger.info("refund approved: id=%s approved_minor=%s by=%s", row.id, approved_minor, row.approved_by)
            return row

    def reject(self, request_id: str, actor: Actor | str, notes: str | None = None) -> RefundRequestModel:
        row = self.get(request_id)
        with quote_locks.hold(row.quote_id):
            lock_quote_row(self.session, row.quote_id)
            self.session.refresh(row)
            if row.status not in (REQUESTED, APPROVED) or self.ledger.refund_exposure_minor(row.id) > 0:
                raise InvalidTransition(
                    f"cannot reject a refund that is {row.status} or already has entries",
                    field="status",
                    detail={"status": row.status},
                )
            row.status = REJECTED
            row.rejected_at = now_utc()
            if notes:
                row.notes = notes
            self.session.flush()
            logger.info("refund rejected: id=%s by=%s", row.id, _label(actor))
            return row

    def record_entry(self, request_id: str, data: RefundEntryCreate, actor: Actor | str) -> LedgerResult:
        row = self.get(request_id)
        with quote_locks.hold(row.quote_id):
            try:
                event = PaymentEvent(
                    event_type="refund",
                    amount=data.amount,
                    currency=row.currency,
                    gateway_code=data.gateway_code,
                    external_reference=data.external_reference,
                    status=data.status,
                    refund_request_id=row.id,
                    metadata=data.metadata,
                )
            except ValidationError as exc:
                raise InvalidInput(
                    "invalid refund entry",
                    field="amount",
                    detail={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
                ) from exc
            result = self.ledger.record_payment(row.quote_id, event, actor=_label(actor))
            self.session.refresh(row)
            if result.duplicate:
                return result

            now = now_utc()
            if row.status == APPROVED and data.status != "failed":
                row.status = PROCESSED
                row.processed_at = now
            settled_minor = self._settled_minor(row.id)
            if row.status == PROCESSED and settled_minor >= int(row.approved_minor or 0):
                row.status = COMPLETED
                row.completed_at = now
            self.session.flush()
            return result

    def _settled_minor(self, request_id: str) -> int:
        return sum(
            -entry.amount_minor
            for entry in self.session.scalars(
                select(PaymentEventModel)
                .where(PaymentEventModel.refund_request_id == request_id)
                .where(PaymentEventModel.status == "completed")
            ).all()
        )

    def complete(self, request_id: str, actor: Actor | str) -> RefundRequestModel:
        """Close a processed request that will not be refunded in full."""
        row = self.get(request_id)
        with quote_locks.hold(row.quote_id):
            lock_quote_row(self.session, row.quote_id)
            self.session.refresh(row)
            if row.status != PROCESSED:
                raise InvalidTransition(
                    f"only processed refunds can be completed, this one is {row.status}",
                    field="status",
                    detail={"status": row.status},
                )
            row.status = COMPLETED
            row.completed_at = now_utc()
            self.session.flush()
            logger.info("refund closed: id=%s settled_minor=%s by=%s", row.id, self._settled_minor(row.id), _label(actor))
            return row
