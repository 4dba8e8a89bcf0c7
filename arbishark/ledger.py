"""Balances, positions and realized PnL.

The ledger only changes by applying a completed ``TradeResult``. Buying
a bundle moves cash into outcome positions whose combined settlement
value is locked at ``expected_sum`` per unit; selling a bundle mints and
sells it in one step, so only cash moves.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable

from arbishark.models import Side, TradeResult


@dataclass(frozen=True)
class Position:
    outcome_id: str
    size: float
    entry_price: float


class Ledger:
    def __init__(self, initial_balance: float) -> None:
        self._initial_balance = initial_balance
        self._cash = initial_balance
        self._locked_value = 0.0
        self._realized_pnl = 0.0
        self._positions: Dict[str, Position] = {}
        self._history: list[TradeResult] = []

    @classmethod
    def replay(cls, initial_balance: float, history: Iterable[TradeResult]) -> "Ledger":
        ledger = cls(initial_balance)
        for result in history:
            ledger.apply(result)
        return ledger

    @property
    def initial_balance(self) -> float:
        return self._initial_balance

    @property
    def cash_balance(self) -> float:
        return self._cash

    @property
    def locked_value(self) -> float:
        return self._locked_value

    @property
    def realized_pnl(self) -> float:
        return self._realized_pnl

    @property
    def positions(self) -> Dict[str, Position]:
        return dict(self._positions)

    @property
    def history(self) -> tuple[TradeResult, ...]:
        return tuple(self._history)

    def equity(self) -> float:
        return self._cash + self._locked_value

    def can_afford(self, amount: float) -> bool:
        return amount <= self._cash

    def apply(self, result: TradeResult) -> None:
        self._history.append(result)
        if not result.success or result.filled_size <= 0:
            return

        if result.direction is Side.BUY:
            self._cash -= result.notional + result.fee_paid
            self._locked_value += result.expected_sum * result.filled_size
            for leg in result.legs:
                self._add_position(leg.outcome_id, leg.quantity, leg.execution_price)
        else:
            self._cash += result.notional - result.fee_paid - result.expected_sum * result.filled_size
        self._realized_pnl += result.net_pnl

    def _add_position(self, outcome_id: str, quantity: float, price: float) -> None:
        current = self._positions.get(outcome_id)
        if current is None:
            self._positions[outcome_id] = Position(outcome_id, quantity, price)
            return
        size = current.size + quantity
        entry = (current.size * current.entry_price + quantity * price) / size if size > 0 else 0.0
        self._positions[outcome_id] = Position(outcome_id, size, entry)

    # ---- Statistics ----

    @property
    def total_pnl(self) -> float:
        return self._realized_pnl

    @property
    def trade_count(self) -> int:
        return len(self._history)

    def win_rate(self) -> float:
        if not self._history:
            return 0.0
        wins = sum(1 for result in self._history if result.is_win)
        return wins / len(self._history)

    def trades_on(self, day: datetime) -> int:
        key = day.date()
        return sum(1 for result in self._history if result.executed_at.date() == key)

    def pnl_on(self, day: datetime) -> float:
        key = day.date()
        return sum(
            result.net_pnl
            for result in self._history
            if result.success and result.filled_size > 0 and result.executed_at.date() == key
        )

    def avg_profit_per_trade(self) -> float:
        if not self._history:
            return 0.0
        return self._realized_pnl / len(self._history)
