from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any, Callable, Dict

import httpx
import websockets

from arbishark.config import DataSourceSettings
from arbishark.errors import DataUnavailable
from arbishark.models import Market, OrderBook, PriceLevel, QuoteUpdate, utc_now

from .base import MarketDataSource, SourceHealth

LOGGER = logging.getLogger(__name__)


class PolymarketSource(MarketDataSource):
    """Gamma REST for market discovery, CLOB REST/websocket for books."""

    name = "polymarket"

    def __init__(
        self,
        settings: DataSourceSettings,
        timeout_seconds: float = 10.0,
        *,
        gamma_client: httpx.AsyncClient | None = None,
        clob_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._gamma = gamma_client or httpx.AsyncClient(
            base_url=settings.gamma_base_url.rstrip("/"),
            timeout=timeout_seconds,
        )
        self._clob = clob_client or httpx.AsyncClient(
            base_url=settings.clob_base_url.rstrip("/"),
            timeout=timeout_seconds,
        )
        self._outcome_to_market: Dict[str, str] = {}
        self._last_outcome: str | None = None

    # ---- Discovery ----

    async def list_markets(self) -> list[Market]:
        params: dict[str, Any] = {
            "active": "true",
            "closed": "false",
            "limit": self._settings.market_limit,
        }
        if self._settings.market_ids:
            params["condition_ids"] = ",".join(self._settings.market_ids)
        try:
            response = await self._gamma.get("/markets", params=params)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DataUnavailable(f"polymarket market listing failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise DataUnavailable(f"polymarket market listing returned a non-JSON body: {exc}") from exc
        rows = payload if isinstance(payload, list) else payload.get("data", []) if isinstance(payload, dict) else []

        markets: list[Market] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            market = self._parse_market(row)
            if market is None:
                continue
            markets.append(market)
            for outcome_id in market.outcome_ids:
                self._outcome_to_market[outcome_id] = market.market_id
            if len(markets) >= self._settings.market_limit:
                break
        return markets

    def _parse_market(self, row: dict[str, Any]) -> Market | None:
        token_ids = [str(value).strip() for value in _parse_json_array(row.get("clobTokenIds"))]
        token_ids = [value for value in token_ids if value]
        if len(token_ids) < 2 or len(set(token_ids)) != len(token_ids):
            return None
        market_id = str(row.get("conditionId") or row.get("condition_id") or row.get("id") or "").strip()
        if not market_id:
            return None
        fee_bps = row.get("takerBaseFee") or row.get("taker_base_fee")
        return Market(
            market_id=market_id,
            outcome_ids=tuple(token_ids),
            liquidity=_to_size(row.get("liquidityNum") or row.get("liquidity") or row.get("liquidityClob")),
            active=bool(row.get("active", True)) and not bool(row.get("closed", False)),
            question=str(row.get("question") or row.get("title") or ""),
            fee_bps=_to_size(fee_bps) if fee_bps is not None else None,
        )

    # ---- Books ----

    async def get_order_book(self, outcome_id: str) -> OrderBook:
        attempts = max(1, self._settings.book_retry_attempts)
        base_delay = max(0.0, self._settings.book_retry_base_delay_seconds)
        max_delay = max(base_delay, self._settings.book_retry_max_delay_seconds)

        for attempt in range(attempts):
            try:
                response = await self._clob.get("/book", params={"token_id": outcome_id})
            except httpx.HTTPError as exc:
                raise DataUnavailable(f"polymarket /book failed for {outcome_id}: {exc}", outcome_id=outcome_id) from exc

            if response.status_code == 429:
                if attempt >= attempts - 1:
                    break

                retry_after_raw = response.headers.get("Retry-After")
                retry_after_seconds: float | None = None
                if retry_after_raw:
                    try:
                        retry_after_seconds = max(0.0, float(retry_after_raw))
                    except ValueError:
                        retry_after_seconds = None

                if retry_after_seconds is None:
                    exp_backoff = base_delay * (2**attempt)
                    jitter = random.uniform(0.0, base_delay) if base_delay > 0 else 0.0
                    retry_after_seconds = min(max_delay, exp_backoff + jitter)

                await asyncio.sleep(retry_after_seconds)
                continue

            if response.status_code >= 400:
                raise DataUnavailable(
                    f"polymarket /book returned {response.status_code} for {outcome_id}",
                    outcome_id=outcome_id,
                )

            book = _book_from_response(outcome_id, response)
            self._last_outcome = outcome_id
            self._note_data(book.timestamp)
            return book

        raise DataUnavailable(f"polymarket /book rate-limited for {outcome_id}", outcome_id=outcome_id)

    # ---- Health ----

    async def health_check(self) -> SourceHealth:
        """Times one live CLOB request and reports the venue's book delay.

        Requests ``/book`` for the most recently fetched outcome (or any
        listed one), falling back to ``/time`` before anything is known.
        Transport errors, error statuses and unreadable bodies report
        unhealthy rather than raising.
        """
        outcome_id = self._last_outcome or next(iter(self._outcome_to_market), None)
        started = time.perf_counter()
        try:
            if outcome_id is None:
                response = await self._clob.get("/time")
            else:
                response = await self._clob.get("/book", params={"token_id": outcome_id})
        except httpx.HTTPError as exc:
            return SourceHealth(healthy=False, detail=f"polymarket unreachable: {exc}")
        latency_ms = (time.perf_counter() - started) * 1000.0

        if response.status_code >= 400:
            return SourceHealth(
                healthy=False,
                latency_ms=latency_ms,
                detail=f"polymarket health request returned {response.status_code}",
            )
        if outcome_id is None:
            return SourceHealth(healthy=True, latency_ms=latency_ms, detail="no data yet")

        try:
            book = _book_from_response(outcome_id, response)
        except DataUnavailable as exc:
            return SourceHealth(healthy=False, latency_ms=latency_ms, detail=str(exc))
        self._note_data(book.timestamp)
        delay = max(0.0, (self._clock() - book.timestamp).total_seconds() * 1000.0)
        return SourceHealth(healthy=True, latency_ms=latency_ms, data_delay_ms=delay)

    # ---- Stream ----

    def supports_streaming(self) -> bool:
        return True

    async def stream_quotes(self) -> AsyncIterator[QuoteUpdate]:
        asset_ids = list(self._outcome_to_market)
        if not asset_ids:
            for market in await self.list_markets():
                asset_ids.extend(market.outcome_ids)
        if not asset_ids:
            return

        ws_url = self._settings.ws_base_url.rstrip("/") + "/market"
        state: dict[str, dict[str, dict[float, float]]] = {}

        async with websockets.connect(ws_url, ping_interval=20, ping_timeout=20, max_size=None) as socket:
            await socket.send(json.dumps({"type": "MARKET", "assets_ids": asset_ids}))

            while True:
                raw = await socket.recv()
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8")

                if raw == "PING":
                    await socket.send("PONG")
                    continue

                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    continue

                events = payload if isinstance(payload, list) else [payload]
                for event in events:
                    if not isinstance(event, dict):
                        continue
                    for update in apply_stream_event(state, event):
                        self._note_data(update.book.timestamp)
                        yield update

    async def aclose(self) -> None:
        await self._gamma.aclose()
        await self._clob.aclose()


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def parse_book(outcome_id: str, payload: dict[str, Any]) -> OrderBook:
    """CLOB ``/book`` payload to an ``OrderBook`` with best-first levels."""
    bids = _aggregate(payload.get("bids") or payload.get("buys"))
    asks = _aggregate(payload.get("asks") or payload.get("sells"))
    return _book_from_levels(outcome_id, bids, asks, _parse_timestamp(payload.get("timestamp")))


def _book_from_response(outcome_id: str, response: httpx.Response) -> OrderBook:
    try:
        payload = response.json()
    except ValueError as exc:
        raise DataUnavailable(
            f"polymarket /book returned a non-JSON body for {outcome_id}", outcome_id=outcome_id
        ) from exc
    if not isinstance(payload, dict):
        raise DataUnavailable(f"polymarket /book payload malformed for {outcome_id}", outcome_id=outcome_id)
    return parse_book(outcome_id, payload)


def apply_stream_event(
    state: dict[str, dict[str, dict[float, float]]],
    event: dict[str, Any],
) -> list[QuoteUpdate]:
    """Folds a market-channel event into ``state`` and returns changed books."""
    event_type = str(event.get("event_type") or "").lower()
    timestamp = _parse_timestamp(event.get("timestamp"))
    touched: list[str] = []

    if event_type == "book":
        asset_id = str(event.get("asset_id") or "").strip()
        if not asset_id:
            return []
        state[asset_id] = {
            "bids": _aggregate(event.get("bids") or event.get("buys")),
            "asks": _aggregate(event.get("asks") or event.get("sells")),
        }
        touched.append(asset_id)
    elif event_type == "price_change":
        changes = event.get("price_changes") or event.get("changes") or []
        for change in changes:
            if not isinstance(change, dict):
                continue
            asset_id = str(change.get("asset_id") or event.get("asset_id") or "").strip()
            price = _to_price(change.get("price"))
            if not asset_id or price is None:
                continue
            book_state = state.setdefault(asset_id, {"bids": {}, "asks": {}})
            side_key = "bids" if str(change.get("side") or "").upper() == "BUY" else "asks"
            size = _to_size(change.get("size"))
            if size > 0:
                book_state[side_key][price] = size
            else:
                book_state[side_key].pop(price, None)
            if asset_id not in touched:
                touched.append(asset_id)
    else:
        return []

    received_at = utc_now()
    return [
        QuoteUpdate(
            outcome_id=asset_id,
            book=_book_from_levels(asset_id, state[asset_id]["bids"], state[asset_id]["asks"], timestamp),
            received_at=received_at,
        )
        for asset_id in touched
    ]


def _book_from_levels(
    outcome_id: str,
    bids: dict[float, float],
    asks: dict[float, float],
    timestamp: datetime,
) -> OrderBook:
    return OrderBook(
        outcome_id=outcome_id,
        bids=tuple(PriceLevel(price, size) for price, size in sorted(bids.items(), reverse=True)),
        asks=tuple(PriceLevel(price, size) for price, size in sorted(asks.items())),
        timestamp=timestamp,
    )


def _aggregate(raw: Any) -> dict[float, float]:
    levels: dict[float, float] = {}
    if not isinstance(raw, list):
        return levels
    for item in raw:
        if isinstance(item, dict):
            price, size = _to_price(item.get("price")), _to_size(item.get("size"))
        elif isinstance(item, (list, tuple)) and len(item) >= 2:
            price, size = _to_price(item[0]), _to_size(item[1])
        else:
            continue
        if price is None or size <= 0:
            continue
        levels[price] = levels.get(price, 0.0) + size
    return levels


def _parse_json_array(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def _parse_timestamp(value: Any) -> datetime:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return utc_now()
    if numeric > 1e12:
        numeric /= 1000.0
    if numeric <= 0:
        return utc_now()
    return datetime.fromtimestamp(numeric, tz=timezone.utc)


def _to_price(value: Any) -> float | None:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if numeric <= 0:
        return None
    return numeric


def _to_size(value: Any) -> float:
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return 0.0
