from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from arbishark.config import RiskSettings
from arbishark.errors import RiskHalted
from arbishark.models import Side, TradeResult
from arbishark.risk import RiskManager, RiskMode

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _result(pnl: float, *, success: bool = True) -> TradeResult:
    return TradeResult(
        group_id="g",
        direction=Side.BUY,
        requested_size=1.0,
        filled_size=1.0 if success else 0.0,
        vwap=0.9,
        fee_paid=0.0,
        slippage=0.0,
        slippage_cost=0.0,
        latency_ms=0.0,
        adverse_move=0.0,
        net_pnl=pnl,
        notional=0.9,
        expected_sum=1.0,
        executed_at=T0,
        observed_at=T0,
        success=success,
    )


def _manager(**overrides: float) -> RiskManager:
    params = dict(
        max_drawdown=0.20,
        max_daily_loss=50.0,
        max_consecutive_losses=5,
        volatility_threshold=0.15,
        min_liquidity=1000.0,
        max_position_size=100.0,
    )
    params.update(overrides)
    return RiskManager(RiskSettings(**params), initial_equity=100.0, cooldown_seconds=300, clock=lambda: T0)


class TestBreaches:
    def test_consecutive_losses_halt_within_other_bounds(self) -> None:
        manager = _manager()
        equity = 100.0
        for index in range(4):
            equity -= 0.01
            manager.record_trade(_result(-0.01), equity, T0)
            assert manager.mode is RiskMode.NORMAL, index
        manager.record_trade(_result(-0.01), equity - 0.01, T0)
        assert manager.mode is RiskMode.SAFE_MODE
        state = manager.state
        assert state.consecutive_losses == 5
        assert state.drawdown < 0.20
        assert state.daily_loss < 50.0
        assert "consecutive losses" in state.halt_reason

    def test_win_resets_loss_streak(self) -> None:
        manager = _manager()
        for _ in range(4):
            manager.record_trade(_result(-0.01), 100.0, T0)
        manager.record_trade(_result(0.02), 100.0, T0)
        assert manager.state.consecutive_losses == 0

    def test_failed_trade_counts_as_loss(self) -> None:
        manager = _manager()
        manager.record_trade(_result(0.0, success=False), 100.0, T0)
        assert manager.state.consecutive_losses == 1

    def test_drawdown_halt(self) -> None:
        manager = _manager()
        manager.mark_equity(110.0)
        manager.mark_equity(85.0)
        allowed, reason = manager.precheck(5_000.0, T0)
        assert allowed is False
        assert "drawdown" in reason
        assert manager.mode is RiskMode.SAFE_MODE

    def test_drawdown_at_limit_does_not_halt(self) -> None:
        manager = _manager(max_drawdown=0.25)
        manager.mark_equity(75.0)
        assert manager.precheck(5_000.0, T0) == (True, "ok")

    def test_daily_loss_halt(self) -> None:
        manager = _manager(max_drawdown=0.9, max_consecutive_losses=100)
        manager.record_trade(_result(-60.0), 40.0, T0)
        assert manager.mode is RiskMode.SAFE_MODE
        assert "daily loss" in manager.state.halt_reason

    def test_volatility_halt(self) -> None:
        manager = _manager(volatility_threshold=0.01, max_drawdown=0.9)
        manager.record_trade(_result(5.0), 105.0, T0)
        assert manager.mode is RiskMode.NORMAL
        manager.record_trade(_result(-5.0), 100.0, T0)
        assert manager.volatility_estimate > 0.01
        assert manager.mode is RiskMode.SAFE_MODE

    def test_liquidity_floor(self) -> None:
        manager = _manager()
        allowed, reason = manager.precheck(999.0, T0)
        assert allowed is False
        assert "liquidity" in reason

    def test_check_raises(self) -> None:
        manager = _manager()
        with pytest.raises(RiskHalted):
            manager.check(10.0, T0)

    def test_clamp_size(self) -> None:
        manager = _manager(max_position_size=25.0)
        assert manager.clamp_size(40.0) == 25.0
        assert manager.clamp_size(10.0) == 10.0

    def test_day_roll_resets_daily_loss(self) -> None:
        manager = _manager(max_daily_loss=100.0)
        manager.record_trade(_result(-10.0), 90.0, T0)
        assert manager.state.daily_loss == 10.0
        manager.roll_day(T0 + timedelta(days=1))
        assert manager.state.daily_loss == 0.0


class TestCooldown:
    def test_no_resume_before_cooldown_even_if_condition_clears(self) -> None:
        manager = _manager()
        manager.precheck(10.0, T0)
        assert manager.mode is RiskMode.SAFE_MODE

        assert manager.maybe_resume(T0 + timedelta(seconds=299)) is False
        assert manager.mode is RiskMode.SAFE_MODE
        allowed, _ = manager.precheck(5_000.0, T0 + timedelta(seconds=299))
        assert allowed is False

        assert manager.maybe_resume(T0 + timedelta(seconds=300)) is True
        assert manager.mode is RiskMode.NORMAL
        assert manager.precheck(5_000.0, T0 + timedelta(seconds=301)) == (True, "ok")

    def test_resume_resets_loss_streak(self) -> None:
        manager = _manager()
        for _ in range(5):
            manager.record_trade(_result(-0.01), 99.99, T0)
        assert manager.mode is RiskMode.SAFE_MODE
        assert manager.maybe_resume(T0 + timedelta(seconds=300)) is True
        assert manager.state.consecutive_losses == 0
        assert manager.state.safe_mode_until is None

    def test_second_halt_keeps_first_deadline(self) -> None:
        manager = _manager()
        manager.halt("first", T0)
        manager.halt("second", T0 + timedelta(seconds=100))
        assert manager.state.safe_mode_until == T0 + timedelta(seconds=300)
        assert manager.state.halt_reason == "first"
