from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Sequence

from arbishark.constraints import ConstraintEngine
from arbishark.errors import InvalidQuote
from arbishark.execution_model import ExecutionSimulator
from arbishark.models import (
    ConstraintGroup,
    GroupSnapshot,
    ReferencePrice,
    Side,
    SignalLeg,
    TradeSignal,
)

LOGGER = logging.getLogger(__name__)


class StrategyMode(str, Enum):
    CONSERVATIVE = "conservative"
    NORMAL = "normal"
    AGGRESSIVE = "aggressive"


THRESHOLD_MULTIPLIERS = {
    StrategyMode.CONSERVATIVE: 2.5,
    StrategyMode.NORMAL: 1.0,
    StrategyMode.AGGRESSIVE: 0.5,
}


def adaptive_mode(
    remaining_fraction: float,
    conservative_below: float = 0.3,
    aggressive_above: float = 0.7,
) -> StrategyMode:
    """Picks a mode from the share of the daily allowance still unspent."""
    if remaining_fraction < conservative_below:
        return StrategyMode.CONSERVATIVE
    if remaining_fraction > aggressive_above:
        return StrategyMode.AGGRESSIVE
    return StrategyMode.NORMAL


@dataclass(frozen=True)
class DetectorConfig:
    """Trade/no-trade gate configuration.

    Parameters
    ----------
    min_spread_threshold:
        Edge must be strictly greater than this. Default 0.02.
    min_profit_threshold:
        Expected profit must be strictly greater than this. Default 0.10.
    trade_size:
        Bundle units proposed per candidate. Default 5.0.
    max_position_value:
        Cap on capital committed by a single candidate. Default 50.0.
    reference_price:
        Prices the edge is measured at. Default executable.
    """

    min_spread_threshold: float = 0.02
    min_profit_threshold: float = 0.10
    trade_size: float = 5.0
    max_position_value: float = 50.0
    reference_price: ReferencePrice = ReferencePrice.EXECUTABLE


@dataclass(frozen=True)
class Thresholds:
    min_spread: float
    min_profit: float


class ArbitrageDetector:
    def __init__(
        self,
        constraints: ConstraintEngine,
        simulator: ExecutionSimulator,
        config: DetectorConfig | None = None,
    ) -> None:
        self._constraints = constraints
        self._simulator = simulator
        self._config = config or DetectorConfig()

    @property
    def config(self) -> DetectorConfig:
        return self._config

    def thresholds(self, mode: StrategyMode = StrategyMode.NORMAL) -> Thresholds:
        scale = THRESHOLD_MULTIPLIERS[mode]
        return Thresholds(
            min_spread=self._config.min_spread_threshold * scale,
            min_profit=self._config.min_profit_threshold * scale,
        )

    def detect(
        self,
        group: ConstraintGroup,
        snapshot: GroupSnapshot,
        mode: StrategyMode = StrategyMode.NORMAL,
        size: float | None = None,
    ) -> TradeSignal | None:
        """Candidate signal for ``group`` or None when the gate says no trade.

        Raises ``InvalidQuote`` for malformed books.
        """
        evaluation = self._constraints.evaluate_books(group, snapshot.books, self._config.reference_price)
        if evaluation.crossed_outcomes:
            LOGGER.debug("crossed book in %s: %s", group.group_id, ",".join(evaluation.crossed_outcomes))
        if evaluation.direction is None:
            return None

        limits = self.thresholds(mode)
        if not evaluation.edge > limits.min_spread:
            return None

        legs = tuple(
            SignalLeg(
                outcome_id=outcome,
                side=evaluation.direction,
                weight=weight,
                reference_price=evaluation.prices[outcome],
                midpoint=evaluation.midpoints.get(outcome),
            )
            for outcome, weight in zip(group.outcome_ids, group.weights)
        )
        unit_capital = evaluation.weighted_sum if evaluation.direction is Side.BUY else group.expected_sum
        if size is None:
            impact_limit = self._impact_limit(legs, evaluation.edge, snapshot.liquidity)
            candidate_size = min(self._candidate_size(unit_capital), impact_limit)
        else:
            candidate_size = size
        if candidate_size <= 0:
            return None

        cost = self._simulator.estimate_costs(legs, candidate_size, snapshot.liquidity)
        expected_profit = evaluation.edge * candidate_size - cost.total
        if not expected_profit > limits.min_profit:
            LOGGER.debug(
                "%s below profit gate: edge=%.4f size=%.4f profit=%.4f",
                group.group_id,
                evaluation.edge,
                candidate_size,
                expected_profit,
            )
            return None

        return TradeSignal(
            group_id=group.group_id,
            direction=evaluation.direction,
            legs=legs,
            edge=evaluation.edge,
            size=candidate_size,
            expected_profit=expected_profit,
            cost=cost,
            expected_sum=group.expected_sum,
            weighted_sum=evaluation.weighted_sum,
            liquidity=snapshot.liquidity,
            books=dict(snapshot.books),
            observed_at=snapshot.fetched_at,
            metadata={"crossed": list(evaluation.crossed_outcomes)} if evaluation.crossed_outcomes else {},
        )

    def reprice(self, signal: TradeSignal, size: float) -> TradeSignal:
        """Same opportunity re-estimated at a different size."""
        cost = self._simulator.estimate_costs(signal.legs, size, signal.liquidity)
        return replace(signal, size=size, cost=cost, expected_profit=signal.edge * size - cost.total)

    def scan(
        self,
        snapshots: Iterable[GroupSnapshot],
        mode: StrategyMode = StrategyMode.NORMAL,
    ) -> tuple[list[TradeSignal], int]:
        """Ranked signals across snapshots plus the count of discarded quotes."""
        signals: list[TradeSignal] = []
        invalid = 0
        for snapshot in snapshots:
            try:
                signal = self.detect(snapshot.group, snapshot, mode)
            except InvalidQuote as exc:
                invalid += 1
                LOGGER.debug("discarding %s: %s", snapshot.group.group_id, exc)
                continue
            if signal is not None:
                signals.append(signal)
        return rank_signals(signals), invalid

    def _impact_limit(self, legs: Sequence[SignalLeg], edge: float, liquidity: float) -> float:
        """Bundle size at which each leg's impact takes its share of the edge.

        Each leg may consume ``edge / (n * (1 + alpha))`` per bundle unit,
        the point where power-law impact stops adding expected profit.
        """
        slippage = self._simulator.slippage_model
        share = edge / (len(legs) * (1.0 + slippage.config.alpha))
        limit = float("inf")
        for leg in legs:
            if leg.weight <= 0:
                continue
            quantity = slippage.max_size_for_edge(share / leg.weight, leg.reference_price, liquidity)
            limit = min(limit, quantity / leg.weight)
        return limit

    def _candidate_size(self, unit_capital: float) -> float:
        size = self._config.trade_size
        if unit_capital > 0 and self._config.max_position_value > 0:
            size = min(size, self._config.max_position_value / unit_capital)
        return size


def rank_signals(signals: Iterable[TradeSignal]) -> list[TradeSignal]:
    """Descending expected-profit density; ties broken by group id."""
    return sorted(signals, key=lambda signal: (-signal.profit_density, signal.group_id))

