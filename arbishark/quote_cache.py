from __future__ import annotations

from datetime import datetime
from typing import Dict

from arbishark.models import OrderBook, QuoteUpdate


class QuoteCache:
    """Latest streamed book per outcome.

    Updates are ordered per outcome by timestamp; an update older than
    the cached book is dropped.
    """

    def __init__(self) -> None:
        self._books: Dict[str, OrderBook] = {}

    def __len__(self) -> int:
        return len(self._books)

    def apply(self, update: QuoteUpdate) -> bool:
        current = self._books.get(update.outcome_id)
        if current is not None and update.book.timestamp < current.timestamp:
            return False
        self._books[update.outcome_id] = update.book
        return True

    def get(self, outcome_id: str, now: datetime, max_age_ms: float) -> OrderBook | None:
        book = self._books.get(outcome_id)
        if book is None or book.age_ms(now) > max_age_ms:
            return None
        return book

    def clear(self) -> None:
        self._books.clear()
