from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from landed.api.utils import ADMIN, INTERNAL, READERS
from landed.core.security import Actor, get_actor, require_roles
from landed.ledger.store import entry_to_dict
from landed.persistence.pg import get_session
from landed.reconciliation.refunds import (
    RefundApproval,
    RefundCreate,
    RefundEntryCreate,
    RefundWorkflow,
    refund_to_dict,
)

router = APIRouter(tags=["refunds"])


class RefundRejection(BaseModel):
    notes: str | None = None


@router.post("/quotes/{quote_id}/refunds", status_code=201)
def request_refund(
    quote_id: str,
    request: RefundCreate,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, {"customer", "admin"})
    row = RefundWorkflow(session).request_refund(quote_id, request, actor)
    return refund_to_dict(row)


@router.get("/quotes/{quote_id}/refunds")
def list_refunds(
    quote_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, READERS)
    workflow = RefundWorkflow(session)
    return {
        "quote_id": quote_id,
        "refundable": format(workflow.refundable(quote_id).amount, "f"),
        "refunds": [refund_to_dict(row) for row in workflow.for_quote(quote_id)],
    }


@router.get("/refunds/{request_id}")
def get_refund(
    request_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, READERS)
    return refund_to_dict(RefundWorkflow(session).get(request_id))


@router.post("/refunds/{request_id}/approve")
def approve_refund(
    request_id: str,
    request: RefundApproval,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, ADMIN, "admin role required")
    return refund_to_dict(RefundWorkflow(session).approve(request_id, request, actor))


@router.post("/refunds/{request_id}/reject")
def reject_refund(
    request_id: str,
    request: RefundRejection,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, ADMIN, "admin role required")
    return refund_to_dict(RefundWorkflow(session).reject(request_id, actor, notes=request.notes))


@router.post("/refunds/{request_id}/entries")
def record_refund_entry(
    request_id: str,
    request: RefundEntryCreate,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, INTERNAL, "refund entries are recorded by system or admin")
    workflow = RefundWorkflow(session)
    result = workflow.record_entry(request_id, request, actor)
    return {
        "duplicate": result.duplicate,
        "entry": entry_to_dict(result.entry),
        "summary": result.summary.to_dict(),
        "refund": refund_to_dict(workflow.get(request_id)),
    }


@router.post("/refunds/{request_id}/complete")
def complete_refund(
    request_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, ADMIN, "admin role required")
    return refund_to_dict(RefundWorkflow(session).complete(request_id, actor))
