"""GraphQL indexer client.

The indexer mirrors on-chain market and order-book state. Its freshness
is the age of the latest indexed block, read from ``_meta``.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from arbishark.errors import DataUnavailable
from arbishark.models import Market, OrderBook, utc_now

from .base import MarketDataSource, SourceHealth
from .polymarket import _parse_json_array, _to_size, parse_book

LOGGER = logging.getLogger(__name__)

_META_QUERY = "{ _meta { block { number timestamp } } }"

_MARKETS_QUERY = """{
  markets {
    id
    question
    clobTokenIds
    takerBaseFee
    liquidity
    active
    acceptingOrders
  }
}"""

_BOOK_QUERY = """query Book($tokenId: String!) {
  orderBook(tokenId: $tokenId) {
    tokenId
    bids { price size }
    asks { price size }
    timestamp
  }
}"""


class IndexerSource(MarketDataSource):
    name = "indexer"

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 10.0,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def _query(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"query": query}
        if variables:
            body["variables"] = variables
        try:
            response = await self._client.post(self._endpoint, json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DataUnavailable(f"indexer request failed: {exc}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise DataUnavailable(f"indexer returned a non-JSON body: {exc}") from exc
        if not isinstance(payload, dict):
            raise DataUnavailable("indexer returned a non-object payload")
        if payload.get("errors"):
            raise DataUnavailable(f"indexer GraphQL errors: {payload['errors']}")
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    async def list_markets(self) -> list[Market]:
        data = await self._query(_MARKETS_QUERY)
        markets: list[Market] = []
        for row in data.get("markets") or []:
            if not isinstance(row, dict):
                continue
            token_ids = [str(value).strip() for value in _parse_json_array(row.get("clobTokenIds")) if str(value).strip()]
            market_id = str(row.get("id") or "").strip()
            if not market_id or len(token_ids) < 2:
                continue
            fee = row.get("takerBaseFee")
            markets.append(
                Market(
                    market_id=market_id,
                    outcome_ids=tuple(token_ids),
                    liquidity=_to_size(row.get("liquidity")),
                    active=bool(row.get("active")) and bool(row.get("acceptingOrders", True)),
                    question=str(row.get("question") or ""),
                    fee_bps=_to_size(fee) if fee is not None else None,
                )
            )
        return markets

    async def get_order_book(self, outcome_id: str) -> OrderBook:
        try:
            data = await self._query(_BOOK_QUERY, {"tokenId": outcome_id})
        except DataUnavailable as exc:
            raise DataUnavailable(str(exc), outcome_id=outcome_id) from exc
        payload = data.get("orderBook")
        if not isinstance(payload, dict):
            raise DataUnavailable(f"indexer has no book for {outcome_id}", outcome_id=outcome_id)
        book = parse_book(outcome_id, payload)
        self._note_data(book.timestamp)
        return book

    async def health_check(self) -> SourceHealth:
        started = time.monotonic()
        try:
            data = await self._query(_META_QUERY)
        except DataUnavailable as exc:
            return SourceHealth(healthy=False, detail=str(exc))
        latency_ms = (time.monotonic() - started) * 1000.0

        block = (data.get("_meta") or {}).get("block") or {}
        try:
            block_ts = float(block.get("timestamp") or 0)
        except (TypeError, ValueError):
            block_ts = 0.0
        if block_ts <= 0:
            return SourceHealth(healthy=False, latency_ms=latency_ms, detail="indexer reported no block")

        block_time = datetime.fromtimestamp(block_ts, tz=timezone.utc)
        delay_ms = max(0.0, (utc_now() - block_time).total_seconds() * 1000.0)
        return SourceHealth(
            healthy=True,
            latency_ms=latency_ms,
            data_delay_ms=delay_ms,
            detail=f"block {block.get('number')}",
        )

    async def aclose(self) -> None:
        await self._client.aclose()
