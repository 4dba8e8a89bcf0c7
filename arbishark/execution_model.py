"""Execution simulation for arbitrage bundles.

Turns a signal and a chosen size into a ``TradeResult`` by applying, in
order: an order-book walk, the partial-fill model, non-linear slippage,
the fee model and latency-driven drift. Nothing here performs I/O; all
randomness comes from the injected ``random.Random`` and drift function.
"""

from __future__ import annotations

import abc
import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Sequence

from arbishark.errors import ExecutionFailure
from arbishark.fee_model import FeeModel
from arbishark.fill_model import FillModel
from arbishark.latency_model import LatencyModel
from arbishark.models import (
    CostEstimate,
    LegFill,
    PriceLevel,
    Side,
    SignalLeg,
    TradeResult,
    TradeSignal,
    utc_now,
)
from arbishark.slippage_model import SlippageModel

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Book walk
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BookWalk:
    requested: float
    filled: float
    cost: float
    levels_consumed: int
    exhausted: bool

    @property
    def vwap(self) -> float:
        return self.cost / self.filled if self.filled > 0 else 0.0

    @property
    def unfilled(self) -> float:
        return max(0.0, self.requested - self.filled)


def walk_book(levels: Sequence[PriceLevel], size: float) -> BookWalk:
    """Consumes ``size`` from the best level outward."""
    remaining = max(0.0, size)
    filled = 0.0
    cost = 0.0
    consumed = 0
    for level in levels:
        if remaining <= 0:
            break
        take = min(remaining, level.size)
        if take <= 0:
            continue
        filled += take
        cost += take * level.price
        remaining -= take
        consumed += 1
    return BookWalk(
        requested=size,
        filled=filled,
        cost=cost,
        levels_consumed=consumed,
        exhausted=remaining > 0,
    )


def realized_slippage(midpoint: float, execution_price: float) -> float:
    """Relative deviation of the execution price from the pre-trade midpoint."""
    if midpoint <= 0:
        raise ValueError(f"midpoint must be positive, got {midpoint}")
    return abs(execution_price - midpoint) / midpoint


# ---------------------------------------------------------------------------
# Simulator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExecutionModelConfig:
    """Configuration for the execution simulator.

    Parameters
    ----------
    failure_rate:
        Probability that a filled trade fails to settle. Default 0.0.
    """

    failure_rate: float = 0.0


class ExecutionSimulator:
    def __init__(
        self,
        fee_model: FeeModel | None = None,
        slippage_model: SlippageModel | None = None,
        fill_model: FillModel | None = None,
        latency_model: LatencyModel | None = None,
        config: ExecutionModelConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._rng = rng or random.Random()
        self.fee_model = fee_model or FeeModel()
        self.slippage_model = slippage_model or SlippageModel()
        self.fill_model = fill_model or FillModel()
        self.latency_model = latency_model or LatencyModel(rng=self._rng)
        self._config = config or ExecutionModelConfig()
        self._clock = clock

    @property
    def config(self) -> ExecutionModelConfig:
        return self._config

    def estimate_costs(self, legs: Iterable[SignalLeg], size: float, liquidity: float) -> CostEstimate:
        """Pre-trade cost estimate at reference prices."""
        notional = 0.0
        slippage = 0.0
        for leg in legs:
            quantity = leg.weight * size
            notional += quantity * leg.reference_price
            slippage += self.slippage_model.cost(leg.reference_price, quantity, liquidity)
        return CostEstimate(
            fee=self.fee_model.fee_for(notional),
            slippage=slippage,
            adverse_selection=self.latency_model.adverse_selection_estimate(notional),
        )

    def simulate(self, signal: TradeSignal, size: float) -> TradeResult:
        """Simulates executing ``size`` bundle units of ``signal``.

        Raises ``ExecutionFailure`` when nothing fills or settlement fails.
        """
        if size <= 0:
            raise ExecutionFailure(f"{signal.group_id}: non-positive size {size}")

        liquidity = signal.liquidity
        depth_units = math.inf
        for leg in signal.legs:
            book = signal.books.get(leg.outcome_id)
            if book is None:
                raise ExecutionFailure(f"{signal.group_id}: no book for {leg.outcome_id}")
            depth_units = min(depth_units, book.depth(leg.side) / leg.weight)

        filled = self.fill_model.filled_size(size, liquidity, book_depth=depth_units)
        if filled <= 0:
            raise ExecutionFailure(f"{signal.group_id}: no fill (liquidity={liquidity:.2f}, depth={depth_units:.4f})")
        if self._config.failure_rate > 0 and self._rng.random() < self._config.failure_rate:
            raise ExecutionFailure(f"{signal.group_id}: simulated settlement failure")

        delay_ms = self.latency_model.sample_delay_ms()

        fills: list[LegFill] = []
        effective_notional = 0.0
        slippage_cost = 0.0
        for leg in signal.legs:
            quantity = leg.weight * filled
            walk = walk_book(signal.books[leg.outcome_id].levels(leg.side), quantity)
            effective = self.slippage_model.effective_price(walk.vwap, quantity, liquidity, leg.side)
            executed = self.latency_model.reprice(effective, delay_ms, leg.side)
            effective_notional += quantity * effective
            slippage_cost += quantity * abs(effective - walk.vwap)
            fills.append(
                LegFill(
                    outcome_id=leg.outcome_id,
                    side=leg.side,
                    weight=leg.weight,
                    quantity=quantity,
                    book_vwap=walk.vwap,
                    execution_price=executed,
                    signal_price=leg.reference_price,
                    midpoint=leg.midpoint,
                )
            )

        fee = self.fee_model.fee_for(effective_notional)
        notional = math.fsum(fill.quantity * fill.execution_price for fill in fills)
        payoff = signal.expected_sum * filled
        if signal.direction is Side.BUY:
            net_pnl = payoff - notional - fee
        else:
            net_pnl = notional - payoff - fee

        executed_sum = math.fsum(fill.weight * fill.execution_price for fill in fills)
        signal_sum = math.fsum(fill.weight * fill.signal_price for fill in fills)
        mid_sum = _midpoint_sum(fills)
        slippage = realized_slippage(mid_sum, executed_sum) if mid_sum > 0 else 0.0

        result = TradeResult(
            group_id=signal.group_id,
            direction=signal.direction,
            requested_size=size,
            filled_size=filled,
            vwap=notional / filled,
            fee_paid=fee,
            slippage=slippage,
            slippage_cost=slippage_cost,
            latency_ms=delay_ms,
            adverse_move=executed_sum - signal_sum,
            net_pnl=net_pnl,
            notional=notional,
            expected_sum=signal.expected_sum,
            executed_at=self._clock(),
            observed_at=signal.observed_at,
            legs=tuple(fills),
        )
        LOGGER.debug(
            "simulated %s %s requested=%.4f filled=%.4f vwap=%.6f fee=%.6f pnl=%.6f",
            signal.group_id,
            signal.direction.value,
            size,
            filled,
            result.vwap,
            fee,
            net_pnl,
        )
        return result


def _midpoint_sum(fills: Sequence[LegFill]) -> float:
    total = 0.0
    for fill in fills:
        if fill.midpoint is None:
            return 0.0
        total += fill.weight * fill.midpoint
    return total


# ---------------------------------------------------------------------------
# Execution backends
# ---------------------------------------------------------------------------


class ExecutionBackend(abc.ABC):
    """Executes an approved signal. Real signing backends live outside this package."""

    name: str

    @abc.abstractmethod
    def execute(self, signal: TradeSignal, size: float) -> TradeResult:
        raise NotImplementedError


class SimulatedExecution(ExecutionBackend):
    name = "simulated"

    def __init__(self, simulator: ExecutionSimulator) -> None:
        self._simulator = simulator

    @property
    def simulator(self) -> ExecutionSimulator:
        return self._simulator

    def execute(self, signal: TradeSignal, size: float) -> TradeResult:
        return self._simulator.simulate(signal, size)
