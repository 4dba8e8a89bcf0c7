from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime

from arbishark.models import Market, OrderBook, QuoteUpdate, utc_now


@dataclass(frozen=True)
class SourceHealth:
    healthy: bool
    latency_ms: float = 0.0
    data_delay_ms: float = 0.0
    detail: str = ""


class MarketDataSource(ABC):
    name: str
    _last_data_at: datetime | None = None

    @abstractmethod
    async def list_markets(self) -> list[Market]:
        raise NotImplementedError

    @abstractmethod
    async def get_order_book(self, outcome_id: str) -> OrderBook:
        """Fresh book for one outcome. Raises ``DataUnavailable`` on failure."""
        raise NotImplementedError

    def supports_streaming(self) -> bool:
        return False

    async def stream_quotes(self) -> AsyncIterator[QuoteUpdate]:
        if False:
            yield
        return

    async def health_check(self) -> SourceHealth:
        """Delay since the newest book this source delivered."""
        if self._last_data_at is None:
            return SourceHealth(healthy=True, detail="no data yet")
        delay = max(0.0, (utc_now() - self._last_data_at).total_seconds() * 1000.0)
        return SourceHealth(healthy=True, data_delay_ms=delay)

    def _note_data(self, observed_at: datetime) -> None:
        if self._last_data_at is None or observed_at > self._last_data_at:
            self._last_data_at = observed_at

    async def aclose(self) -> None:
        return None
