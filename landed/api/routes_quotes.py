from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from landed.api.utils import ADMIN, READERS
from landed.core.security import Actor, get_actor, require_roles
from landed.core.timeutils import iso_z
from landed.domain import lifecycle
from landed.persistence.pg import get_session
from landed.quotes.schemas import (
    AddressUpdateRequest,
    PriceAdjustmentRequest,
    PricingRequest,
    TransitionRequest,
)
from landed.quotes.service import QuoteService, address_change_to_dict, quote_to_dict, transition_to_dict

router = APIRouter(tags=["quotes"])

# Customers may answer a quote they were sent; everything else is staff-driven.
CUSTOMER_TARGETS = {lifecycle.APPROVED, lifecycle.REJECTED, lifecycle.CANCELLED}


def _quote_view(service: QuoteService, quote_id: str) -> dict:
    quote = service.get(quote_id)
    return quote_to_dict(
        quote,
        breakdown=service.current_breakdown(quote),
        summary=service.ledger.summary(quote),
    )


@router.post("/quotes/preview")
def preview_quote(
    request: PricingRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, READERS)
    priced = QuoteService(session).preview(request)
    return {
        "route_id": priced.route_row.id,
        "profile": {"id": priced.profile.id, "version": priced.profile.version},
        "breakdown": priced.breakdown.to_dict(),
    }


@router.post("/quotes", status_code=201)
def create_quote(
    request: PricingRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, {"customer", "admin"}, "customer or admin role required")
    service = QuoteService(session)
    quote = service.create_quote(request, actor)
    return _quote_view(service, quote.id)


@router.get("/quotes/{quote_id}")
def get_quote(
    quote_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, READERS)
    return _quote_view(QuoteService(session), quote_id)


@router.get("/quotes/{quote_id}/revisions")
def list_revisions(
    quote_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, READERS)
    service = QuoteService(session)
    service.get(quote_id)
    return {
        "quote_id": quote_id,
        "revisions": [
            {
                "revision": row.revision,
                "reason": row.reason,
                "breakdown": row.breakdown,
                "breakdown_hash": row.breakdown_hash,
                "created_by": row.created_by,
                "created_at": iso_z(row.created_at),
            }
            for row in service.revisions(quote_id)
        ],
    }


@router.get("/quotes/{quote_id}/transitions")
def list_transitions(
    quote_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, READERS)
    service = QuoteService(session)
    service.get(quote_id)
    return {
        "quote_id": quote_id,
        "transitions": [transition_to_dict(entry) for entry in service.transition_log(quote_id)],
    }


@router.post("/quotes/{quote_id}/transitions")
def transition_quote(
    quote_id: str,
    request: TransitionRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, {"customer", "admin"})
    if actor.type == "customer" and request.to_status not in CUSTOMER_TARGETS:
        raise HTTPException(status_code=403, detail="customers may only approve, reject or cancel a quote")
    service = QuoteService(session)
    trigger = lifecycle.TRIGGER_MANUAL
    if request.to_status == lifecycle.SENT:
        trigger = lifecycle.TRIGGER_QUOTE_SENT
    elif request.to_status == lifecycle.SHIPPED:
        trigger = lifecycle.TRIGGER_ORDER_SHIPPED
    meta = {"reason": request.reason} if request.reason else None
    service.transition(quote_id, request.to_status, actor, trigger=trigger, meta=meta)
    return _quote_view(service, quote_id)


@router.post("/quotes/{quote_id}/send")
def send_quote(
    quote_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, ADMIN, "admin role required")
    service = QuoteService(session)
    service.send_quote(quote_id, actor)
    return _quote_view(service, quote_id)


@router.post("/quotes/{quote_id}/recalculate")
def recalculate_quote(
    quote_id: str,
    request: PricingRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, {"customer", "admin"})
    service = QuoteService(session)
    service.recalculate(quote_id, request, actor)
    return _quote_view(service, quote_id)


@router.post("/quotes/{quote_id}/price-adjustments")
def adjust_price(
    quote_id: str,
    request: PriceAdjustmentRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, ADMIN, "admin role required")
    service = QuoteService(session)
    service.adjust_price(quote_id, request.pricing, request.reason, actor)
    return _quote_view(service, quote_id)


@router.put("/quotes/{quote_id}/shipping-address")
def update_shipping_address(
    quote_id: str,
    request: AddressUpdateRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, {"customer", "admin"})
    service = QuoteService(session)
    service.update_shipping_address(quote_id, request.shipping_address, actor, reason=request.reason)
    return _quote_view(service, quote_id)


@router.get("/quotes/{quote_id}/shipping-address/history")
def shipping_address_history(
    quote_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, READERS)
    history = QuoteService(session).address_history(quote_id)
    return {"quote_id": quote_id, "history": [address_change_to_dict(entry) for entry in history]}
