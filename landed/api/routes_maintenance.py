from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from landed.api.utils import INTERNAL
from landed.core.security import Actor, get_actor, require_roles
from landed.persistence.pg import get_session
from landed.quotes.service import QuoteService
from landed.reconciliation.rules import run_reconciliation

router = APIRouter(tags=["maintenance"])


@router.post("/maintenance/expire")
def expire_quotes(
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, INTERNAL, "admin or system role required")
    expired = QuoteService(session).expire_stale_quotes()
    return {"expired": expired, "count": len(expired)}


@router.post("/maintenance/reconcile")
def reconcile(
    repair: bool = Query(default=False),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    if repair:
        require_roles(actor, INTERNAL, "repair requires admin or system role")
    else:
        require_roles(actor, INTERNAL | {"auditor"}, "reconciliation requires admin, system or auditor role")
    failures = run_reconciliation(session, repair=repair)
    return {
        "passed": not failures,
        "repair": repair,
        "failures": [result.to_dict() for result in failures],
    }
