from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Callable

import numpy as np

from arbishark.errors import RiskHalted
from arbishark.models import TradeResult, utc_now

if TYPE_CHECKING:
    from arbishark.config import RiskSettings

LOGGER = logging.getLogger(__name__)


class RiskMode(str, Enum):
    NORMAL = "normal"
    SAFE_MODE = "safe_mode"


@dataclass(frozen=True)
class RiskState:
    equity_peak: float
    current_equity: float
    consecutive_losses: int
    daily_loss: float
    volatility_estimate: float
    mode: RiskMode
    safe_mode_until: datetime | None
    halt_reason: str = ""

    @property
    def drawdown(self) -> float:
        if self.equity_peak <= 0:
            return 0.0
        return max(0.0, (self.equity_peak - self.current_equity) / self.equity_peak)


class RiskManager:
    """Circuit breaker over equity, losses, volatility and liquidity.

    Once tripped it stays in SafeMode until ``cooldown_seconds`` have
    passed, even if the triggering condition clears sooner.
    """

    def __init__(
        self,
        settings: RiskSettings,
        initial_equity: float,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._clock = clock
        self._equity_peak = initial_equity
        self._equity = initial_equity
        self._consecutive_losses = 0
        self._daily_loss = 0.0
        self._day_key = clock().strftime("%Y-%m-%d")
        self._returns: deque[float] = deque(maxlen=max(2, settings.volatility_window))
        self._mode = RiskMode.NORMAL
        self._safe_mode_until: datetime | None = None
        self._halt_reason = ""

    @property
    def settings(self) -> RiskSettings:
        return self._settings

    @property
    def mode(self) -> RiskMode:
        return self._mode

    @property
    def state(self) -> RiskState:
        return RiskState(
            equity_peak=self._equity_peak,
            current_equity=self._equity,
            consecutive_losses=self._consecutive_losses,
            daily_loss=self._daily_loss,
            volatility_estimate=self.volatility_estimate,
            mode=self._mode,
            safe_mode_until=self._safe_mode_until,
            halt_reason=self._halt_reason,
        )

    @property
    def volatility_estimate(self) -> float:
        if len(self._returns) < 2:
            return 0.0
        return float(np.std(np.asarray(self._returns, dtype=float)))

    # ---- Checks ----

    def precheck(self, liquidity: float, now: datetime | None = None) -> tuple[bool, str]:
        if self._mode is RiskMode.SAFE_MODE:
            return False, f"safe mode: {self._halt_reason}"
        reason = self._breach_reason()
        if not reason and liquidity < self._settings.min_liquidity:
            reason = f"liquidity {liquidity:.2f} below floor {self._settings.min_liquidity:.2f}"
        if reason:
            self.halt(reason, now)
            return False, reason
        return True, "ok"

    def check(self, liquidity: float, now: datetime | None = None) -> None:
        allowed, reason = self.precheck(liquidity, now)
        if not allowed:
            raise RiskHalted(reason)

    def clamp_size(self, size: float) -> float:
        return min(size, self._settings.max_position_size)

    def _breach_reason(self) -> str:
        settings = self._settings
        drawdown = self.state.drawdown
        if drawdown > settings.max_drawdown:
            return f"drawdown {drawdown:.2%} exceeds {settings.max_drawdown:.2%}"
        if self._daily_loss > settings.max_daily_loss:
            return f"daily loss {self._daily_loss:.2f} exceeds {settings.max_daily_loss:.2f}"
        if self._consecutive_losses >= settings.max_consecutive_losses:
            return f"{self._consecutive_losses} consecutive losses"
        volatility = self.volatility_estimate
        if volatility > settings.volatility_threshold:
            return f"volatility {volatility:.4f} exceeds {settings.volatility_threshold:.4f}"
        return ""

    # ---- Updates ----

    def record_trade(self, result: TradeResult, equity: float, now: datetime | None = None) -> None:
        """Feeds a completed (or failed) trade into the breaker.

        Failed trades count as losses. Trips the breaker immediately when
        this trade crosses a threshold.
        """
        self.roll_day(now)
        pnl = result.net_pnl if result.success else min(0.0, result.net_pnl)
        if result.success and pnl > 0:
            self._consecutive_losses = 0
        else:
            self._consecutive_losses += 1
        if pnl < 0:
            self._daily_loss += -pnl
        if self._equity > 0:
            self._returns.append(pnl / self._equity)
        self.mark_equity(equity)

        if self._mode is RiskMode.NORMAL:
            reason = self._breach_reason()
            if reason:
                self.halt(reason, now)

    def mark_equity(self, equity: float) -> None:
        self._equity = equity
        self._equity_peak = max(self._equity_peak, equity)

    def roll_day(self, now: datetime | None = None) -> None:
        key = (now or self._clock()).strftime("%Y-%m-%d")
        if key != self._day_key:
            self._day_key = key
            self._daily_loss = 0.0

    def halt(self, reason: str, now: datetime | None = None) -> None:
        if self._mode is RiskMode.SAFE_MODE:
            return
        now = now or self._clock()
        self._mode = RiskMode.SAFE_MODE
        self._safe_mode_until = now + self._cooldown
        self._halt_reason = reason
        LOGGER.warning("risk halt: %s (until %s)", reason, self._safe_mode_until.isoformat())

    def maybe_resume(self, now: datetime | None = None) -> bool:
        """Returns to Normal once the cooldown has elapsed.

        The loss streak and volatility window restart; drawdown and
        the daily loss persist until equity or the day changes.
        """
        if self._mode is RiskMode.NORMAL:
            return True
        now = now or self._clock()
        if self._safe_mode_until is not None and now < self._safe_mode_until:
            return False
        self._mode = RiskMode.NORMAL
        self._safe_mode_until = None
        self._halt_reason = ""
        self._consecutive_losses = 0
        self._returns.clear()
        LOGGER.info("risk manager resumed normal mode")
        return True
