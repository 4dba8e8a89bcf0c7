from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from arbishark.ledger import Ledger
from arbishark.models import LegFill, Side, TradeResult

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _buy(size: float = 10.0, yes: float = 0.5, no: float = 0.25, fee: float = 0.15, at: datetime = T0) -> TradeResult:
    legs = (
        LegFill("yes", Side.BUY, 1.0, size, yes, yes, yes),
        LegFill("no", Side.BUY, 1.0, size, no, no, no),
    )
    notional = size * (yes + no)
    return TradeResult(
        group_id="g",
        direction=Side.BUY,
        requested_size=size,
        filled_size=size,
        vwap=notional / size,
        fee_paid=fee,
        slippage=0.0,
        slippage_cost=0.0,
        latency_ms=50.0,
        adverse_move=0.0,
        net_pnl=size - notional - fee,
        notional=notional,
        expected_sum=1.0,
        executed_at=at,
        observed_at=at,
        legs=legs,
    )


def _sell(size: float = 10.0, yes: float = 0.625, no: float = 0.5, fee: float = 0.0) -> TradeResult:
    legs = (
        LegFill("yes", Side.SELL, 1.0, size, yes, yes, yes),
        LegFill("no", Side.SELL, 1.0, size, no, no, no),
    )
    notional = size * (yes + no)
    return TradeResult(
        group_id="s",
        direction=Side.SELL,
        requested_size=size,
        filled_size=size,
        vwap=notional / size,
        fee_paid=fee,
        slippage=0.0,
        slippage_cost=0.0,
        latency_ms=50.0,
        adverse_move=0.0,
        net_pnl=notional - size - fee,
        notional=notional,
        expected_sum=1.0,
        executed_at=T0,
        observed_at=T0,
        legs=legs,
    )


class TestApply:
    def test_buy_locks_settlement_value(self) -> None:
        ledger = Ledger(100.0)
        ledger.apply(_buy())
        assert ledger.cash_balance == pytest.approx(100.0 - 7.5 - 0.15)
        assert ledger.locked_value == pytest.approx(10.0)
        assert ledger.equity() == pytest.approx(102.35)
        assert ledger.realized_pnl == pytest.approx(2.35)
        assert ledger.positions["yes"].size == 10.0
        assert ledger.positions["no"].entry_price == 0.25

    def test_sell_moves_only_cash(self) -> None:
        ledger = Ledger(100.0)
        ledger.apply(_sell())
        assert ledger.cash_balance == pytest.approx(101.25)
        assert ledger.locked_value == 0.0
        assert ledger.positions == {}

    def test_equity_change_matches_pnl(self) -> None:
        ledger = Ledger(50.0)
        for result in (_buy(), _sell(), _buy(size=4.0, fee=0.0)):
            ledger.apply(result)
        assert ledger.equity() - 50.0 == pytest.approx(ledger.total_pnl)

    def test_positions_average_entry(self) -> None:
        ledger = Ledger(100.0)
        ledger.apply(_buy(size=10.0, yes=0.5))
        ledger.apply(_buy(size=10.0, yes=0.6, no=0.25))
        position = ledger.positions["yes"]
        assert position.size == 20.0
        assert position.entry_price == pytest.approx(0.55)

    def test_failed_trade_recorded_without_balance_change(self) -> None:
        ledger = Ledger(100.0)
        failed = TradeResult(
            group_id="g",
            direction=Side.BUY,
            requested_size=5.0,
            filled_size=0.0,
            vwap=0.0,
            fee_paid=0.0,
            slippage=0.0,
            slippage_cost=0.0,
            latency_ms=0.0,
            adverse_move=0.0,
            net_pnl=0.0,
            notional=0.0,
            expected_sum=1.0,
            executed_at=T0,
            observed_at=T0,
            success=False,
            error="no fill",
        )
        ledger.apply(failed)
        assert ledger.equity() == 100.0
        assert ledger.trade_count == 1
        assert ledger.win_rate() == 0.0


class TestStatistics:
    def test_win_rate_and_trades_on(self) -> None:
        ledger = Ledger(100.0)
        ledger.apply(_buy())
        ledger.apply(_buy(yes=0.8, no=0.3, fee=0.0, at=T0 + timedelta(days=1)))
        assert ledger.win_rate() == 0.5
        assert ledger.trades_on(T0) == 1
        assert ledger.trades_on(T0 + timedelta(days=1)) == 1

    def test_daily_pnl_and_average_profit(self) -> None:
        ledger = Ledger(100.0)
        assert ledger.avg_profit_per_trade() == 0.0
        ledger.apply(_buy())
        ledger.apply(_buy(yes=0.8, no=0.3, fee=0.0, at=T0 + timedelta(days=1)))
        assert ledger.pnl_on(T0) == pytest.approx(2.35)
        assert ledger.pnl_on(T0 + timedelta(days=1)) == pytest.approx(-1.0)
        assert ledger.avg_profit_per_trade() == pytest.approx(0.675)

    def test_can_afford(self) -> None:
        ledger = Ledger(5.0)
        assert ledger.can_afford(5.0) is True
        assert ledger.can_afford(5.01) is False


def test_replay_reproduces_equity() -> None:
    history = [_buy(), _sell(), _buy(size=3.0, fee=0.05)]
    live = Ledger(100.0)
    for result in history:
        live.apply(result)
    replayed = Ledger.replay(100.0, history)
    assert replayed.equity() == live.equity()
    assert replayed.cash_balance == live.cash_balance
    assert replayed.positions == live.positions
    assert replayed.history == live.history
