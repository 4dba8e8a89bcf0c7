"""Rolling daily spend allowance delegated to the engine.

The guard is the only authority that approves and records spend. Amounts
are accumulated as decimals so ``spent_today`` lands exactly on the
limit instead of drifting a rounding error past it.

Usage::

    guard = PermissionGuard(PermissionConfig(daily_limit=10.0, duration_days=30))
    guard.roll_window()
    if guard.can_spend(2.5):
        guard.record_spend(2.5)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable

from arbishark.errors import PermissionDenied
from arbishark.models import utc_now

LOGGER = logging.getLogger(__name__)

WINDOW = timedelta(days=1)


def _dec(amount: float) -> Decimal:
    return Decimal(str(amount))


# ---------------------------------------------------------------------------
# Config / state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PermissionConfig:
    """Parameters of the delegated spending grant.

    Parameters
    ----------
    daily_limit:
        Maximum spend per rolling one-day window, in currency units.
    duration_days:
        Lifetime of the grant from ``granted_at``.
    """

    daily_limit: float = 10.0
    duration_days: int = 30


@dataclass(frozen=True)
class PermissionState:
    daily_limit: float
    spent_today: float
    window_start: datetime
    duration: timedelta
    granted_at: datetime
    revoked: bool
    pending_shortfall: float = 0.0

    @property
    def remaining_allowance(self) -> float:
        return max(0.0, self.daily_limit - self.spent_today)

    @property
    def expires_at(self) -> datetime:
        return self.granted_at + self.duration


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class PermissionGuard:
    def __init__(
        self,
        config: PermissionConfig | None = None,
        *,
        granted_at: datetime | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config or PermissionConfig()
        self._clock = clock
        self._granted_at = granted_at or clock()
        self._window_start = self._granted_at
        self._limit = _dec(self._config.daily_limit)
        self._spent = Decimal("0")
        self._shortfall = Decimal("0")
        self._revoked = False

    @property
    def config(self) -> PermissionConfig:
        return self._config

    @property
    def state(self) -> PermissionState:
        return PermissionState(
            daily_limit=self._config.daily_limit,
            spent_today=float(self._spent),
            window_start=self._window_start,
            duration=timedelta(days=self._config.duration_days),
            granted_at=self._granted_at,
            revoked=self._revoked,
            pending_shortfall=float(self._shortfall),
        )

    @property
    def spent_today(self) -> float:
        return float(self._spent)

    @property
    def remaining_allowance(self) -> float:
        return float(max(Decimal("0"), self._limit - self._spent))

    @property
    def remaining_fraction(self) -> float:
        if self._limit <= 0:
            return 0.0
        return float(max(Decimal("0"), self._limit - self._spent) / self._limit)

    @property
    def is_revoked(self) -> bool:
        return self._revoked

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or self._clock()
        return now >= self._granted_at + timedelta(days=self._config.duration_days)

    def in_window(self, now: datetime | None = None) -> bool:
        now = now or self._clock()
        return self._granted_at <= now and not self.is_expired(now)

    def roll_window(self, now: datetime | None = None) -> bool:
        """Resets spend once a full day has elapsed since ``window_start``.

        Any pending shortfall from under-estimated trades is then charged
        against the current window, capped at the limit. Returns True when
        the window rolled.
        """
        now = now or self._clock()
        rolled = False
        if now >= self._window_start + WINDOW:
            elapsed_days = (now - self._window_start) // WINDOW
            self._window_start += WINDOW * elapsed_days
            self._spent = Decimal("0")
            rolled = True
            LOGGER.info("permission window rolled over; window_start=%s", self._window_start.isoformat())
        if self._shortfall > 0:
            self._spent = min(self._limit, self._spent + self._shortfall)
            LOGGER.info("applied spend shortfall %s to current window", self._shortfall)
            self._shortfall = Decimal("0")
        return rolled

    def can_spend(self, amount: float, now: datetime | None = None) -> bool:
        if self._revoked or amount < 0:
            return False
        if not self.in_window(now):
            return False
        return self._spent + _dec(amount) <= self._limit

    def record_spend(self, amount: float, now: datetime | None = None) -> None:
        """Records spend that ``can_spend`` approved.

        Raises ``PermissionDenied`` when the approval no longer holds.
        """
        if not self.can_spend(amount, now):
            raise PermissionDenied(
                f"spend {amount} not permitted (spent={self._spent} limit={self._limit} revoked={self._revoked})"
            )
        self._spent += _dec(amount)

    def reconcile(self, estimated: float, actual: float) -> float:
        """Queues the amount by which ``actual`` exceeded the approved estimate."""
        shortfall = _dec(actual) - _dec(estimated)
        if shortfall <= 0:
            return 0.0
        self._shortfall += shortfall
        return float(shortfall)

    def revoke(self) -> None:
        if not self._revoked:
            LOGGER.warning("spending permission revoked")
        self._revoked = True
