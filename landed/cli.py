from __future__ import annotations

import argparse
import json
from pathlib import Path

from pydantic import ValidationError

from landed.core.errors import LandedError
from landed.core.logging import configure_logging
from landed.persistence.pg import init_db, session_scope
from landed.quotes.schemas import PricingRequest
from landed.quotes.service import QuoteService
from landed.reconciliation.rules import run_reconciliation


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Landed cost CLI")
    top = parser.add_subparsers(dest="command", required=True)

    top.add_parser("expire-sweep", help="Expire sent quotes past their validity window")

    reconcile = top.add_parser("reconcile", help="Check cached payment totals and ledger integrity")
    reconcile.add_argument("--repair", action="store_true", help="Rewrite drifted cached totals from the ledger")

    preview = top.add_parser("preview", help="Price a request without storing a quote")
    preview.add_argument("request", help="Path to a pricing request JSON file")

    return parser


def _print(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _expire_sweep(_: argparse.Namespace) -> int:
    with session_scope() as session:
        expired = QuoteService(session).expire_stale_quotes()
    _print({"expired": expired, "count": len(expired)})
    return 0


def _reconcile(args: argparse.Namespace) -> int:
    with session_scope() as session:
        failures = run_reconciliation(session, repair=bool(args.repair) or None)
        _print({"passed": not failures, "failures": [result.to_dict() for result in failures]})
    return 0 if not failures else 1


def _preview(args: argparse.Namespace) -> int:
    try:
        request = PricingRequest.model_validate_json(Path(args.request).read_text())
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        _print({"error": "invalid_input", "detail": errors})
        return 2
    with session_scope() as session:
        try:
            priced = QuoteService(session).preview(request)
        except LandedError as exc:
            _print(exc.to_dict())
            return 2
        _print(
            {
                "route_id": priced.route_row.id,
                "profile": {"id": priced.profile.id, "version": priced.profile.version},
                "breakdown": priced.breakdown.to_dict(),
            }
        )
    return 0


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args(argv)
    init_db()

    if args.command == "expire-sweep":
        return _expire_sweep(args)
    if args.command == "reconcile":
        return _reconcile(args)
    if args.command == "preview":
        return _preview(args)

    parser.error("unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
