from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from landed.core.config import Settings, get_settings
from landed.ledger.store import PaymentLedger
from landed.persistence.models import QuoteModel, RefundRequestModel


logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    rule: str
    passed: bool
    detail: str
    quote_id: str | None = None
    repaired: bool = False

    def to_dict(self) -> dict:
        return {
            "rule": self.rule,
            "passed": self.passed,
            "detail": self.detail,
            "quote_id": self.quote_id,
            "repaired": self.repaired,
        }


def check_cached_total_matches_ledger(
    session: Session,
    quote: QuoteModel,
    settings: Settings | None = None,
    repair: bool = False,
) -> ReconciliationResult:
    ledger = PaymentLedger(session, settings)
    raw = ledger.raw_paid_minor(quote.id)
    expected_status = ledger.summary(quote).payment_status
    passed = raw == quote.amount_paid_minor and expected_status == quote.payment_status
    detail = (
        f"cached_paid={quote.amount_paid_minor}, ledger_paid={raw}, "
        f"cached_status={quote.payment_status}, ledger_status={expected_status}"
    )
    repaired = False
    if not passed and repair:
        ledger.refresh_cache(quote)
        repaired = True
    return ReconciliationResult(
        rule="cached_total_matches_ledger",
        passed=passed,
        detail=detail,
        quote_id=quote.id,
        repaired=repaired,
    )


def check_refunds_within_approved(session: Session, quote: QuoteModel) -> ReconciliationResult:
    ledger = PaymentLedger(session)
    requests = session.scalars(
        select(RefundRequestModel).where(RefundRequestModel.quote_id == quote.id)
    ).all()
    for request in requests:
        exposure = ledger.refund_exposure_minor(request.id)
        approved = int(request.approved_minor or 0)
        if exposure > approved:
            return ReconciliationResult(
                rule="refunds_within_approved",
                passed=False,
                detail=f"refund_request={request.id} refunded={exposure} approved={approved}",
                quote_id=quote.id,
            )
    return ReconciliationResult(rule="refunds_within_approved", passed=True, detail="ok", quote_id=quote.id)


def check_ledger_chain(session: Session, quote: QuoteModel) -> ReconciliationResult:
    passed = PaymentLedger(session).verify_chain(quote.id)
    return ReconciliationResult(
        rule="ledger_chain",
        passed=passed,
        detail="ok" if passed else "hash chain broken",
        quote_id=quote.id,
    )


def reconcile_quote(
    session: Session,
    quote: QuoteModel,
    settings: Settings | None = None,
    repair: bool = False,
) -> list[ReconciliationResult]:
    return [
        check_cached_total_matches_ledger(session, quote, settings=settings, repair=repair),
        check_refunds_within_approved(session, quote),
        check_ledger_chain(session, quote),
    ]


def run_reconciliation(session: Session, repair: bool | None = None) -> list[ReconciliationResult]:
    """Check every quote's cached payment fields and ledger integrity.

    Only failures are returned. Cache drift is repaired in place when
    ``repair`` is set (or ``LC_RECONCILE_REPAIR`` when left as None); chain
    and refund violations are never auto-repaired.
    """
    settings = get_settings()
    if repair is None:
        repair = settings.reconcile_repair

    failures: list[ReconciliationResult] = []
    checked = 0
    for quote in session.scalars(select(QuoteModel).order_by(QuoteModel.created_at.asc())).all():
        checked += 1
        for result in reconcile_quote(session, quote, settings=settings, repair=repair):
            if result.passed:
                continue
            logger.warning(
                "reconciliation failure: rule=%s quote=%s repaired=%s detail=%s",
                result.rule,
                result.quote_id,
                result.repaired,
                result.detail,
            )
            failures.append(result)
    logger.info("reconciliation finished: quotes=%s failures=%s", checked, len(failures))
    return failures
