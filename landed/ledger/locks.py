from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session

from landed.core.errors import NotFound
from landed.persistence.models import QuoteModel


class QuoteLockRegistry:
    """In-process mutual exclusion per quote id.

    Re-entrant so a quote-level operation can call into the ledger while
    already holding the quote's lock. Entries are reference counted and
    dropped once no thread holds or waits on them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    def _acquire_entry(self, quote_id: str) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(quote_id)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[quote_id] = entry
            entry[1] += 1
            return entry[0]

    def _release_entry(self, quote_id: str) -> None:
        with self._guard:
            entry = self._locks[quote_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[quote_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, quote_id: str) -> Iterator[None]:
        lock = self._acquire_entry(quote_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(quote_id)


quote_locks = QuoteLockRegistry()


def lock_quote_row(session: Session, quote_id: str) -> QuoteModel:
    # FOR UPDATE serializes writers across sessions on Postgres; SQLite
    # ignores it and relies on the write lock taken by BEGIN IMMEDIATE.
    # Autoflush is off, so push pending changes before the row is reloaded.
    session.flush()
    stmt = (
        select(QuoteModel)
        .where(QuoteModel.id == quote_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = session.scalar(stmt)
    if row is None:
        raise NotFound(f"quote {quote_id} not found", field="quote_id")
    return row
