"""Per-tick engine snapshot and its publishers.

Monitoring collaborators consume one snapshot per tick, either from the
log, a JSON file that is replaced atomically, or Prometheus text.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineSnapshot:
    total_pnl: float
    trades_today: int
    win_rate: float
    daily_spent: float
    remaining_allowance: float
    strategy_mode: str
    data_latency_ms: float
    is_safe_mode: bool
    state: str = "idle"
    tick: int = 0
    timestamp: str = ""
    equity: float = 0.0
    signals: int = 0
    trades_executed: int = 0
    consecutive_failures: int = 0
    daily_pnl: float = 0.0
    avg_profit_per_trade: float = 0.0
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_prometheus_text(self) -> str:
        """Export in Prometheus text exposition format."""
        gauges = (
            ("arbishark_pnl_total", "Total realized PnL", self.total_pnl, "gauge"),
            ("arbishark_trades_today", "Trades executed today", self.trades_today, "gauge"),
            ("arbishark_win_rate", "Share of winning trades", self.win_rate, "gauge"),
            ("arbishark_daily_spent", "Spend recorded in the current window", self.daily_spent, "gauge"),
            ("arbishark_remaining_allowance", "Unspent daily allowance", self.remaining_allowance, "gauge"),
            ("arbishark_data_latency_ms", "Market data delay in milliseconds", self.data_latency_ms, "gauge"),
            ("arbishark_safe_mode", "Safe mode status (1=enabled, 0=disabled)", int(self.is_safe_mode), "gauge"),
            ("arbishark_equity", "Ledger equity", self.equity, "gauge"),
            ("arbishark_daily_pnl", "Realized PnL for the current day", self.daily_pnl, "gauge"),
            ("arbishark_avg_profit_per_trade", "Realized PnL per recorded trade", self.avg_profit_per_trade, "gauge"),
            ("arbishark_consecutive_failures", "Consecutive market data failures", self.consecutive_failures, "gauge"),
            ("arbishark_ticks_total", "Ticks completed", self.tick, "counter"),
        )
        lines: list[str] = []
        for name, help_text, value, kind in gauges:
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} {kind}")
            lines.append(f"{name} {value}")
        lines.append(f'arbishark_strategy_mode{{mode="{self.strategy_mode}"}} 1')
        return "\n".join(lines) + "\n"


SnapshotPublisher = Callable[[EngineSnapshot], None]


class LogSnapshotPublisher:
    def __call__(self, snapshot: EngineSnapshot) -> None:
        LOGGER.info(
            "tick=%d state=%s pnl=%.4f trades_today=%d win_rate=%.2f spent=%.2f remaining=%.2f mode=%s latency_ms=%.0f safe=%s",
            snapshot.tick,
            snapshot.state,
            snapshot.total_pnl,
            snapshot.trades_today,
            snapshot.win_rate,
            snapshot.daily_spent,
            snapshot.remaining_allowance,
            snapshot.strategy_mode,
            snapshot.data_latency_ms,
            snapshot.is_safe_mode,
        )


class JsonFileSnapshotPublisher:
    """Writes the latest snapshot to ``path`` via write-then-rename."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def __call__(self, snapshot: EngineSnapshot) -> None:
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(snapshot.to_dict(), sort_keys=True), encoding="utf-8")
        os.replace(tmp, self._path)


def publish(publishers: Iterable[SnapshotPublisher], snapshot: EngineSnapshot) -> None:
    for publisher in publishers:
        try:
            publisher(snapshot)
        except OSError as exc:
            LOGGER.warning("snapshot publisher %r failed: %s", publisher, exc)


def render_prometheus(snapshot: EngineSnapshot) -> str:
    return snapshot.to_prometheus_text()
