from __future__ import annotations

from arbishark.config import DataSourceSettings

from .base import MarketDataSource, SourceHealth
from .indexer import IndexerSource
from .polymarket import PolymarketSource
from .static import StaticMarketSource


def build_market_source(settings: DataSourceSettings) -> MarketDataSource:
    backend = settings.backend
    if backend == "polymarket":
        return PolymarketSource(settings, timeout_seconds=settings.fetch_timeout_seconds)
    if backend == "indexer":
        return IndexerSource(settings.indexer_url, timeout_seconds=settings.fetch_timeout_seconds)
    if backend == "static":
        if settings.static_markets_path:
            return StaticMarketSource.from_file(settings.static_markets_path)
        return StaticMarketSource()
    raise ValueError(f"unknown market data backend: {backend}")


__all__ = [
    "IndexerSource",
    "MarketDataSource",
    "PolymarketSource",
    "SourceHealth",
    "StaticMarketSource",
    "build_market_source",
]
