from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from arbishark.config import (
    AppSettings,
    DataSourceSettings,
    ExecutionSettings,
    PermissionSettings,
    RiskSettings,
    SafetySettings,
    StrategySettings,
    TradingSettings,
)
from arbishark.engine import ArbEngine, EngineState
from arbishark.exchanges import StaticMarketSource
from arbishark.exchanges.polymarket import PolymarketSource
from arbishark.hooks import Continue
from arbishark.models import Market, OrderBook, PriceLevel, Side, TradeSignal
from arbishark.runtime import RuntimeContext, build_runtime
from arbishark.trade_store import TradeStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _run(coro: Any) -> Any:
    return asyncio.run(coro)


class _Clock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _book(outcome_id: str, bid: float, ask: float) -> OrderBook:
    return OrderBook(outcome_id, bids=(PriceLevel(bid, 500.0),), asks=(PriceLevel(ask, 500.0),))


def _markets() -> list[Market]:
    # alpha: asks sum to 0.85 (buy edge 0.15); beta: bids sum to 0.94 (sell edge 0.06)
    alpha = Market(
        "alpha",
        ("a-yes", "a-no"),
        books={"a-yes": _book("a-yes", 0.38, 0.40), "a-no": _book("a-no", 0.43, 0.45)},
        liquidity=20_000.0,
    )
    beta = Market(
        "beta",
        ("b-yes", "b-no"),
        books={"b-yes": _book("b-yes", 0.47, 0.55), "b-no": _book("b-no", 0.47, 0.55)},
        liquidity=20_000.0,
    )
    return [alpha, beta]


def _settings(tmp_path, **overrides: Any) -> AppSettings:
    params: dict[str, Any] = dict(
        run_once=False,
        poll_interval_seconds=0,
        initial_balance=100.0,
        log_level="INFO",
        trade_history_path=":memory:",
        snapshot_path=None,
        permission=PermissionSettings(daily_limit=10.0, revoke_file=str(tmp_path / "revoke")),
        trading=TradingSettings(),
        strategy=StrategySettings(),
        safety=SafetySettings(),
        risk=RiskSettings(),
        execution=ExecutionSettings(latency_jitter_ms=0.0, random_seed=1),
        data=DataSourceSettings(),
    )
    params.update(overrides)
    return AppSettings(**params)


def _engine(tmp_path, clock: _Clock | None = None, **overrides: Any) -> tuple[ArbEngine, RuntimeContext, StaticMarketSource]:
    clock = clock or _Clock()
    source = StaticMarketSource(_markets(), clock=clock)
    ctx = build_runtime(
        _settings(tmp_path, **overrides),
        source=source,
        store=TradeStore(":memory:"),
        clock=clock,
        rng=random.Random(1),
    )
    return ArbEngine(ctx), ctx, source


class TestTick:
    def test_first_tick_trades_best_signal(self, tmp_path) -> None:
        engine, ctx, _ = _engine(tmp_path)
        assert engine.state is EngineState.IDLE

        report = _run(engine.tick())

        assert engine.state is EngineState.RUNNING
        assert report.signals == 2
        assert report.executed == 2
        assert [trade.group_id for trade in ctx.ledger.history] == ["alpha", "beta"]
        assert ctx.ledger.history[0].direction is Side.BUY
        assert ctx.ledger.history[1].direction is Side.SELL
        assert ctx.store.count() == 2
        assert report.snapshot is not None
        assert report.snapshot.trades_executed == 2
        assert report.snapshot.is_safe_mode is False

    def test_spend_never_exceeds_daily_limit(self, tmp_path) -> None:
        engine, ctx, _ = _engine(tmp_path, permission=PermissionSettings(daily_limit=6.0, revoke_file=str(tmp_path / "revoke")))

        report = _run(engine.tick())

        assert report.executed == 1
        assert report.skipped == 1
        assert ctx.ledger.history[0].group_id == "alpha"
        assert 0 < ctx.guard.spent_today <= 6.0

        for _ in range(3):
            _run(engine.tick())
        assert ctx.guard.spent_today <= 6.0
        assert ctx.store.count() == 1

    def test_approved_estimate_covers_full_fill_costs(self, tmp_path) -> None:
        execution = ExecutionSettings(latency_jitter_ms=0.0, random_seed=1, adverse_selection_std=0.0, fill_beta=0.0)
        engine, ctx, _ = _engine(tmp_path, execution=execution)

        report = _run(engine.tick())

        assert report.executed == 2
        buy = ctx.ledger.history[0]
        assert buy.direction is Side.BUY
        assert buy.filled_size == buy.requested_size
        assert buy.slippage_cost > 0
        assert ctx.guard.state.pending_shortfall == pytest.approx(0.0, abs=1e-9)

    def test_fills_reconcile_fees_without_feeding_the_rate_window(self, tmp_path) -> None:
        engine, ctx, _ = _engine(tmp_path)

        _run(engine.tick())

        report = ctx.fee_model.reconciliation_report()
        assert report is not None
        assert report.sample_count == 2
        assert ctx.fee_model.sample_count == 0
        assert ctx.fee_model.rate_bps() == ExecutionSettings().fee_bps_default
        assert ctx.fee_model.is_reconciled() is True

    def test_blocked_group_skipped(self, tmp_path) -> None:
        engine, ctx, _ = _engine(tmp_path, strategy=StrategySettings(blocked_groups=["alpha"]))

        report = _run(engine.tick())

        assert report.executed == 1
        assert report.skipped == 1
        assert [trade.group_id for trade in ctx.ledger.history] == ["beta"]


class TestSafety:
    def test_stale_data_enters_cooldown_then_resumes(self, tmp_path) -> None:
        clock = _Clock()
        engine, ctx, source = _engine(tmp_path, clock=clock)
        source.data_delay_ms = 6_000

        report = _run(engine.tick())
        assert engine.state is EngineState.COOLDOWN
        assert report.executed == 0
        assert report.snapshot.is_safe_mode is True
        assert ctx.store.count() == 0

        source.data_delay_ms = 0
        clock.advance(10)
        _run(engine.tick())
        assert engine.state is EngineState.COOLDOWN

        clock.advance(300)
        _run(engine.tick())
        assert engine.state is EngineState.IDLE

        report = _run(engine.tick())
        assert engine.state is EngineState.RUNNING
        assert report.executed == 2

    def test_cooldown_holds_while_feed_stays_stale(self, tmp_path) -> None:
        clock = _Clock()
        engine, _, source = _engine(tmp_path, clock=clock)
        source.data_delay_ms = 6_000

        _run(engine.tick())
        clock.advance(400)
        _run(engine.tick())

        assert engine.state is EngineState.COOLDOWN

    def test_stale_leg_blocks_trading_despite_healthy_feed(self, tmp_path) -> None:
        engine, ctx, source = _engine(tmp_path)
        source.outcome_delay_ms["b-no"] = 8_000

        report = _run(engine.tick())

        assert engine.state is EngineState.COOLDOWN
        assert report.executed == 0
        assert report.data_delay_ms == 8_000
        assert ctx.store.count() == 0

    def test_slow_group_excluded_alone(self, tmp_path) -> None:
        engine, ctx, source = _engine(tmp_path, data=DataSourceSettings(fetch_timeout_seconds=0.05))
        source.response_delay_seconds["b-yes"] = 0.5

        report = _run(engine.tick())

        assert engine.state is EngineState.RUNNING
        assert report.fetch_failures == 1
        assert report.signals == 1
        assert [trade.group_id for trade in ctx.ledger.history] == ["alpha"]
        assert engine.consecutive_failures == 1
        snapshot = report.snapshot
        assert snapshot.consecutive_failures == 1
        assert snapshot.daily_pnl == pytest.approx(ctx.ledger.total_pnl)
        assert snapshot.avg_profit_per_trade == pytest.approx(ctx.ledger.total_pnl)

    def test_repeated_fetch_failures_force_cooldown(self, tmp_path) -> None:
        engine, _, source = _engine(tmp_path, permission=PermissionSettings(daily_limit=100.0, revoke_file=str(tmp_path / "revoke")))
        source.failing_outcomes.add("b-no")

        _run(engine.tick())
        _run(engine.tick())
        assert engine.state is EngineState.RUNNING
        assert engine.consecutive_failures == 2

        report = _run(engine.tick())
        assert engine.state is EngineState.COOLDOWN
        assert report.executed == 0

    def test_clean_tick_resets_failure_tally(self, tmp_path) -> None:
        engine, _, source = _engine(tmp_path, permission=PermissionSettings(daily_limit=100.0, revoke_file=str(tmp_path / "revoke")))
        source.failing_outcomes.add("b-no")
        _run(engine.tick())
        _run(engine.tick())

        source.failing_outcomes.clear()
        _run(engine.tick())

        assert engine.consecutive_failures == 0
        assert engine.state is EngineState.RUNNING


class TestStop:
    def test_revoke_file_stops_engine(self, tmp_path) -> None:
        engine, ctx, _ = _engine(tmp_path)
        (tmp_path / "revoke").touch()

        report = _run(engine.tick())

        assert engine.state is EngineState.STOPPED
        assert ctx.guard.is_revoked is True
        assert report.executed == 0
        assert _run(engine.tick()).state is EngineState.STOPPED

    def test_revocation_between_candidates_blocks_next_trade(self, tmp_path) -> None:
        engine, ctx, _ = _engine(tmp_path)
        calls = {"n": 0}

        def _revoke_on_second(signal: TradeSignal) -> Continue:
            calls["n"] += 1
            if calls["n"] == 2:
                ctx.guard.revoke()
            return Continue()

        ctx.hooks.append(_revoke_on_second)

        report = _run(engine.tick())

        assert report.executed == 1
        assert engine.state is EngineState.STOPPED
        assert ctx.store.count() == 1

    def test_expired_permission_stops_engine(self, tmp_path) -> None:
        clock = _Clock()
        engine, _, _ = _engine(tmp_path, clock=clock)
        clock.advance(timedelta(days=31).total_seconds())

        _run(engine.tick())

        assert engine.state is EngineState.STOPPED

    def test_run_forever_honours_max_ticks(self, tmp_path) -> None:
        engine, ctx, _ = _engine(tmp_path, permission=PermissionSettings(daily_limit=100.0, revoke_file=str(tmp_path / "revoke")))

        _run(engine.run_forever(max_ticks=2))

        assert engine.state is EngineState.RUNNING
        assert engine.snapshot(ctx.clock()).tick == 2
        assert ctx.store.count() == 4

    def test_run_once_returns_after_one_tick(self, tmp_path) -> None:
        engine, ctx, _ = _engine(tmp_path, run_once=True)

        _run(engine.run_forever())

        assert engine.snapshot(ctx.clock()).tick == 1

    def test_stream_mode_fills_quote_cache(self, tmp_path) -> None:
        data = DataSourceSettings(stream_mode=True)
        engine, ctx, _ = _engine(tmp_path, run_once=True, data=data)

        _run(engine.run_forever())

        assert engine.snapshot(ctx.clock()).tick == 1


# ---------------------------------------------------------------------------
# Polymarket feed
# ---------------------------------------------------------------------------


class _Venue:
    """Gamma and CLOB endpoints served from memory, stamped with ``clock``."""

    def __init__(self, clock: _Clock) -> None:
        self.clock = clock
        self.down = False
        self.broken: set[str] = set()
        self.books = {
            "m1-yes": (0.38, 0.40),
            "m1-no": (0.43, 0.45),
            "m2-yes": (0.47, 0.55),
            "m2-no": (0.47, 0.55),
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("venue down", request=request)
        path = request.url.path
        if path == "/markets":
            return httpx.Response(
                200,
                json=[
                    {"conditionId": "m1", "clobTokenIds": '["m1-yes", "m1-no"]', "liquidityNum": 20_000},
                    {"conditionId": "m2", "clobTokenIds": '["m2-yes", "m2-no"]', "liquidityNum": 20_000},
                ],
            )
        if path == "/time":
            return httpx.Response(200, json=int(self.clock().timestamp()))
        token = request.url.params["token_id"]
        if token in self.broken:
            return httpx.Response(200, text="<html>502 Bad Gateway</html>")
        bid, ask = self.books[token]
        return httpx.Response(
            200,
            json={
                "timestamp": str(int(self.clock().timestamp() * 1000)),
                "bids": [{"price": str(bid), "size": "500"}],
                "asks": [{"price": str(ask), "size": "500"}],
            },
        )


def _venue_engine(tmp_path, clock: _Clock) -> tuple[ArbEngine, RuntimeContext, _Venue]:
    venue = _Venue(clock)
    transport = httpx.MockTransport(venue)
    source = PolymarketSource(
        DataSourceSettings(backend="polymarket", book_retry_attempts=1),
        gamma_client=httpx.AsyncClient(transport=transport, base_url="https://gamma.test"),
        clob_client=httpx.AsyncClient(transport=transport, base_url="https://clob.test"),
        clock=clock,
    )
    ctx = build_runtime(
        _settings(tmp_path),
        source=source,
        store=TradeStore(":memory:"),
        clock=clock,
        rng=random.Random(1),
    )
    return ArbEngine(ctx), ctx, venue


class TestPolymarketFeed:
    def test_outage_holds_cooldown_until_venue_answers(self, tmp_path) -> None:
        clock = _Clock()
        engine, ctx, venue = _venue_engine(tmp_path, clock)

        report = _run(engine.tick())
        assert engine.state is EngineState.RUNNING
        assert report.fetch_failures == 0

        venue.down = True
        _run(engine.tick())
        _run(engine.tick())
        assert engine.state is EngineState.COOLDOWN

        clock.advance(400)
        _run(engine.tick())
        assert engine.state is EngineState.COOLDOWN

        venue.down = False
        clock.advance(1)
        _run(engine.tick())
        assert engine.state is EngineState.IDLE

        _run(engine.tick())
        assert engine.state is EngineState.RUNNING

    def test_non_json_book_excludes_only_its_group(self, tmp_path) -> None:
        engine, ctx, venue = _venue_engine(tmp_path, _Clock())
        venue.broken.add("m2-no")

        report = _run(engine.tick())

        assert engine.state is EngineState.RUNNING
        assert report.fetch_failures == 1
        assert [trade.group_id for trade in ctx.ledger.history] == ["m1"]
