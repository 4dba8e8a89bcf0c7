from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

import pytest

from arbishark.ledger import Ledger
from arbishark.models import LegFill, Side, TradeResult
from arbishark.trade_store import TradeStore

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _result(group_id: str, pnl: float, *, success: bool = True, direction: Side = Side.BUY) -> TradeResult:
    size = 4.0 if success else 0.0
    legs = (
        (
            LegFill("a", direction, 1.0, size, 0.4, 0.401, 0.4, 0.41),
            LegFill("b", direction, 2.0, 2 * size, 0.2, 0.2, 0.2, None),
        )
        if success
        else ()
    )
    notional = 0.401 * size + 0.2 * 2 * size
    return TradeResult(
        group_id=group_id,
        direction=direction,
        requested_size=4.0,
        filled_size=size,
        vwap=notional / size if size else 0.0,
        fee_paid=0.01 if success else 0.0,
        slippage=0.002,
        slippage_cost=0.004,
        latency_ms=61.5,
        adverse_move=0.001,
        net_pnl=pnl,
        notional=notional,
        expected_sum=1.0,
        executed_at=T0,
        observed_at=T0,
        legs=legs,
        success=success,
        error=None if success else "simulated settlement failure",
    )


class TestTradeStore:
    def test_round_trip_preserves_results(self) -> None:
        store = TradeStore(":memory:")
        original = _result("g1", 0.25)
        trade_id = store.append(original)
        assert len(trade_id) == 32
        loaded = store.load_all()
        assert loaded == [original]
        store.close()

    def test_failed_trade_persisted(self) -> None:
        store = TradeStore(":memory:")
        store.append(_result("g1", 0.0, success=False))
        (loaded,) = store.load_all()
        assert loaded.success is False
        assert loaded.error == "simulated settlement failure"
        assert loaded.legs == ()

    def test_count_by_group(self) -> None:
        store = TradeStore(":memory:")
        store.append(_result("g1", 0.1))
        store.append(_result("g1", -0.1))
        store.append(_result("g2", 0.3))
        assert store.count() == 3
        assert store.count("g1") == 2
        assert store.count("missing") == 0

    def test_edge_statistics_ignore_failures(self) -> None:
        store = TradeStore(":memory:")
        store.append(_result("g1", 0.3))
        store.append(_result("g1", -0.1))
        store.append(_result("g1", 0.0, success=False))
        stats = store.edge_statistics("g1")
        assert stats.samples == 2
        assert stats.mean_pnl == pytest.approx(0.1)
        assert stats.pnl_std == pytest.approx(0.2)
        assert stats.win_rate == 0.5
        assert stats.trusted(2) is True
        assert stats.trusted(3) is False

    def test_edge_statistics_empty(self) -> None:
        stats = TradeStore(":memory:").edge_statistics("none")
        assert stats.samples == 0
        assert stats.trusted(1) is False


def test_file_store_replays_ledger(tmp_path) -> None:
    path = tmp_path / "nested" / "trades.db"
    history = [
        _result("g1", 0.2),
        _result("g2", -0.05, direction=Side.SELL),
        _result("g1", 0.0, success=False),
    ]
    store = TradeStore(path)
    live = Ledger(100.0)
    for result in history:
        store.append(result)
        live.apply(result)
    store.close()

    reopened = TradeStore(path)
    replayed = Ledger.replay(100.0, reopened.load_all())
    reopened.close()
    assert replayed.equity() == live.equity()
    assert replayed.trade_count == 3


def test_history_is_append_only(tmp_path) -> None:
    path = tmp_path / "trades.db"
    store = TradeStore(path)
    store.append(_result("g1", 0.2))
    store.append(_result("g1", 0.3))
    store.close()

    conn = sqlite3.connect(path)
    seqs = [row[0] for row in conn.execute("SELECT seq FROM trades ORDER BY seq")]
    conn.close()
    assert seqs == [1, 2]
