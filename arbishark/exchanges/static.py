"""In-memory market data for paper runs and tests.

Books are re-stamped with the current clock on every read, less an
adjustable ``data_delay_ms`` used to simulate a lagging feed. Entries in
``outcome_delay_ms`` lag single outcomes without touching the health
report.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable

from arbishark.errors import DataUnavailable
from arbishark.models import Market, OrderBook, PriceLevel, QuoteUpdate, utc_now

from .base import MarketDataSource, SourceHealth

LOGGER = logging.getLogger(__name__)


class StaticMarketSource(MarketDataSource):
    name = "static"

    def __init__(
        self,
        markets: Iterable[Market] = (),
        *,
        clock: Callable[[], datetime] = utc_now,
        data_delay_ms: float = 0.0,
    ) -> None:
        self._clock = clock
        self._markets: Dict[str, Market] = {}
        self._books: Dict[str, OrderBook] = {}
        self.data_delay_ms = data_delay_ms
        self.failing_outcomes: set[str] = set()
        self.response_delay_seconds: Dict[str, float] = {}
        self.outcome_delay_ms: Dict[str, float] = {}
        self.calls = 0
        for market in markets:
            self.add_market(market)

    @classmethod
    def from_file(cls, path: str, **kwargs: Any) -> "StaticMarketSource":
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        raw_markets = payload.get("markets") if isinstance(payload, dict) else payload
        return cls([_parse_market(item) for item in raw_markets or []], **kwargs)

    def add_market(self, market: Market) -> None:
        self._markets[market.market_id] = market
        for outcome_id, book in market.books.items():
            self._books[outcome_id] = book

    def set_book(self, book: OrderBook) -> None:
        self._books[book.outcome_id] = book

    async def list_markets(self) -> list[Market]:
        return list(self._markets.values())

    async def get_order_book(self, outcome_id: str) -> OrderBook:
        self.calls += 1
        delay = self.response_delay_seconds.get(outcome_id)
        if delay:
            await asyncio.sleep(delay)
        if outcome_id in self.failing_outcomes:
            raise DataUnavailable(f"static source: {outcome_id} unavailable", outcome_id=outcome_id)
        book = self._books.get(outcome_id)
        if book is None:
            raise DataUnavailable(f"static source: unknown outcome {outcome_id}", outcome_id=outcome_id)
        lag_ms = self.data_delay_ms + self.outcome_delay_ms.get(outcome_id, 0.0)
        stamped = replace(book, timestamp=self._clock() - timedelta(milliseconds=lag_ms))
        self._note_data(stamped.timestamp)
        return stamped

    async def health_check(self) -> SourceHealth:
        return SourceHealth(healthy=True, data_delay_ms=self.data_delay_ms)

    def supports_streaming(self) -> bool:
        return True

    async def stream_quotes(self) -> AsyncIterator[QuoteUpdate]:
        for outcome_id in list(self._books):
            book = await self.get_order_book(outcome_id)
            yield QuoteUpdate(outcome_id=outcome_id, book=book, received_at=self._clock())


def _levels(raw: Any) -> tuple[PriceLevel, ...]:
    levels = []
    for item in raw or []:
        if isinstance(item, dict):
            levels.append(PriceLevel(float(item["price"]), float(item["size"])))
        else:
            price, size = item
            levels.append(PriceLevel(float(price), float(size)))
    return tuple(levels)


def _parse_market(item: dict[str, Any]) -> Market:
    books: Dict[str, OrderBook] = {}
    outcome_ids: list[str] = []
    for outcome in item.get("outcomes", []):
        outcome_id = str(outcome["outcome_id"])
        outcome_ids.append(outcome_id)
        books[outcome_id] = OrderBook(
            outcome_id=outcome_id,
            bids=_levels(outcome.get("bids")),
            asks=_levels(outcome.get("asks")),
        )
    return Market(
        market_id=str(item["market_id"]),
        outcome_ids=tuple(outcome_ids),
        books=books,
        liquidity=float(item.get("liquidity", 0.0)),
        active=bool(item.get("active", True)),
        question=str(item.get("question", "")),
        fee_bps=float(item["fee_bps"]) if item.get("fee_bps") is not None else None,
    )
