from __future__ import annotations

from datetime import datetime

from landed.core.timeutils import as_utc

ADMIN = {"admin"}
INTERNAL = {"admin", "system"}
READERS = {"customer", "admin", "system", "auditor"}


def parse_as_of(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return as_utc(parsed)
