from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from landed.domain.money import Money
from landed.ledger.canonical import CanonicalError, canonical_json, sha256_hex


def test_canonical_json_stable_key_order():
    obj_a = {"b": 2, "a": 1, "nested": {"y": 2, "x": 1}}
    obj_b = {"nested": {"x": 1, "y": 2}, "a": 1, "b": 2}

    assert canonical_json(obj_a) == canonical_json(obj_b)
    assert sha256_hex(obj_a) == sha256_hex(obj_b)


def test_canonical_json_rejects_float():
    with pytest.raises(CanonicalError):
        canonical_json({"amount": 1.23})


def test_canonical_datetime_normalized_to_utc_z():
    dt = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)
    naive = datetime(2026, 1, 1, 8, 0)
    assert canonical_json({"at": dt}) == canonical_json({"at": naive})
    assert "Z" in canonical_json({"at": dt}).decode("utf-8")


def test_canonical_money_and_decimal_encoded_as_strings():
    encoded = canonical_json({"total": Money(Decimal("12.50"), "usd"), "rate": Decimal("0.875")}).decode("utf-8")
    assert '"amount":"12.50"' in encoded
    assert '"currency":"USD"' in encoded
    assert '"rate":"0.875"' in encoded
