from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from arbishark.errors import DataUnavailable
from arbishark.exchanges import StaticMarketSource, build_market_source
from arbishark.config import DataSourceSettings
from arbishark.models import OrderBook, PriceLevel, QuoteUpdate
from arbishark.quote_cache import QuoteCache

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SAMPLE_MARKETS = Path(__file__).resolve().parents[1] / "fixtures" / "sample_markets.json"


def _run(coro: Any) -> Any:
    return asyncio.run(coro)


class TestStaticMarketSource:
    def test_from_file(self) -> None:
        source = StaticMarketSource.from_file(str(SAMPLE_MARKETS), clock=lambda: T0)
        markets = _run(source.list_markets())
        assert [market.market_id for market in markets] == ["fed-march", "senate-control"]
        book = _run(source.get_order_book("fed-march-cut"))
        assert book.best_ask == 0.31
        assert book.timestamp == T0

    def test_data_delay_restamps_books(self) -> None:
        source = StaticMarketSource.from_file(str(SAMPLE_MARKETS), clock=lambda: T0, data_delay_ms=2_500)
        book = _run(source.get_order_book("senate-dem"))
        assert book.age_ms(T0) == pytest.approx(2_500)
        assert _run(source.health_check()).data_delay_ms == 2_500

    def test_outcome_delay_lags_one_book(self) -> None:
        source = StaticMarketSource.from_file(str(SAMPLE_MARKETS), clock=lambda: T0)
        source.outcome_delay_ms["senate-dem"] = 9_000
        assert _run(source.get_order_book("senate-dem")).age_ms(T0) == pytest.approx(9_000)
        assert _run(source.get_order_book("senate-rep")).age_ms(T0) == 0
        assert _run(source.health_check()).data_delay_ms == 0

    def test_failing_outcome(self) -> None:
        source = StaticMarketSource.from_file(str(SAMPLE_MARKETS))
        source.failing_outcomes.add("senate-rep")
        with pytest.raises(DataUnavailable):
            _run(source.get_order_book("senate-rep"))
        with pytest.raises(DataUnavailable):
            _run(source.get_order_book("unknown"))

    def test_stream_yields_every_book(self) -> None:
        source = StaticMarketSource.from_file(str(SAMPLE_MARKETS), clock=lambda: T0)

        async def _collect() -> list[QuoteUpdate]:
            return [update async for update in source.stream_quotes()]

        updates = _run(_collect())
        assert len(updates) == 5

    def test_build_static_source_from_settings(self) -> None:
        source = build_market_source(DataSourceSettings(backend="static", static_markets_path=str(SAMPLE_MARKETS)))
        assert isinstance(source, StaticMarketSource)
        with pytest.raises(ValueError):
            build_market_source(DataSourceSettings(backend="nope"))


class TestQuoteCache:
    def _update(self, outcome_id: str, at: datetime, ask: float) -> QuoteUpdate:
        book = OrderBook(outcome_id, asks=(PriceLevel(ask, 10),), timestamp=at)
        return QuoteUpdate(outcome_id=outcome_id, book=book, received_at=at)

    def test_older_update_dropped(self) -> None:
        cache = QuoteCache()
        assert cache.apply(self._update("a", T0, 0.5)) is True
        assert cache.apply(self._update("a", T0 - timedelta(seconds=1), 0.4)) is False
        assert cache.get("a", T0, 1_000).best_ask == 0.5

    def test_stale_entry_not_served(self) -> None:
        cache = QuoteCache()
        cache.apply(self._update("a", T0, 0.5))
        assert cache.get("a", T0 + timedelta(seconds=2), 1_000) is None
        assert cache.get("a", T0 + timedelta(milliseconds=500), 1_000) is not None

    def test_clear(self) -> None:
        cache = QuoteCache()
        cache.apply(self._update("a", T0, 0.5))
        cache.apply(self._update("b", T0, 0.5))
        assert len(cache) == 2
        cache.clear()
        assert len(cache) == 0
