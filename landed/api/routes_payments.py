from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from landed.api.utils import INTERNAL, READERS
from landed.core.security import Actor, get_actor, require_roles
from landed.ledger.events import PaymentEvent
from landed.ledger.store import entry_to_dict
from landed.persistence.pg import get_session
from landed.quotes.service import QuoteService

router = APIRouter(tags=["payments"])


@router.post("/quotes/{quote_id}/payments")
def record_payment(
    quote_id: str,
    event: PaymentEvent,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, INTERNAL, "payment events are recorded by system or admin")
    service = QuoteService(session)
    result = service.record_payment(quote_id, event, actor)
    quote = service.get(quote_id)
    return {
        "duplicate": result.duplicate,
        "entry": entry_to_dict(result.entry),
        "summary": result.summary.to_dict(),
        "quote_status": quote.status,
    }


@router.get("/quotes/{quote_id}/payments")
def list_payments(
    quote_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, READERS)
    service = QuoteService(session)
    quote = service.get(quote_id)
    return {
        "quote_id": quote_id,
        "summary": service.ledger.summary(quote).to_dict(),
        "chain_valid": service.ledger.verify_chain(quote_id),
        "entries": [entry_to_dict(row) for row in service.ledger.entries(quote_id)],
    }
