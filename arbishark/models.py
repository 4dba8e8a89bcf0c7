from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping

from arbishark.errors import InvalidQuote


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def sign(self) -> int:
        return 1 if self is Side.BUY else -1


class ReferencePrice(str, Enum):
    MIDPOINT = "midpoint"
    EXECUTABLE = "executable"


@dataclass(frozen=True)
class PriceLevel:
    price: float
    size: float


@dataclass(frozen=True)
class OrderBook:
    """Depth for one tradable outcome.

    Bids are best-first (strictly decreasing price), asks best-first
    (strictly increasing price). A crossed book is valid input.
    """

    outcome_id: str
    bids: tuple[PriceLevel, ...] = ()
    asks: tuple[PriceLevel, ...] = ()
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def best_bid(self) -> float | None:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> float | None:
        return self.asks[0].price if self.asks else None

    @property
    def midpoint(self) -> float | None:
        bid, ask = self.best_bid, self.best_ask
        if bid is None and ask is None:
            return None
        if bid is None:
            return ask
        if ask is None:
            return bid
        return (bid + ask) / 2.0

    @property
    def is_crossed(self) -> bool:
        bid, ask = self.best_bid, self.best_ask
        return bid is not None and ask is not None and bid >= ask

    def levels(self, side: Side) -> tuple[PriceLevel, ...]:
        """Levels consumed by an order on ``side``: asks for buys, bids for sells."""
        return self.asks if side is Side.BUY else self.bids

    def depth(self, side: Side) -> float:
        return sum(level.size for level in self.levels(side))

    def notional_depth(self) -> float:
        return sum(level.price * level.size for level in (*self.bids, *self.asks))

    def age_ms(self, now: datetime) -> float:
        return max(0.0, (now - self.timestamp).total_seconds() * 1000.0)

    def validate(self) -> None:
        for name, levels, descending in (("bid", self.bids, True), ("ask", self.asks, False)):
            previous: float | None = None
            for level in levels:
                if level.price <= 0:
                    raise InvalidQuote(
                        f"{self.outcome_id}: non-positive {name} price {level.price}"
                    )
                if level.size < 0:
                    raise InvalidQuote(f"{self.outcome_id}: negative {name} size {level.size}")
                if previous is not None:
                    ordered = level.price < previous if descending else level.price > previous
                    if not ordered:
                        raise InvalidQuote(f"{self.outcome_id}: unordered {name} levels")
                previous = level.price


@dataclass(frozen=True)
class Market:
    market_id: str
    outcome_ids: tuple[str, ...]
    books: Dict[str, OrderBook] = field(default_factory=dict)
    liquidity: float = 0.0
    active: bool = True
    question: str = ""
    fee_bps: float | None = None


@dataclass(frozen=True)
class QuoteUpdate:
    outcome_id: str
    book: OrderBook
    received_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ConstraintGroup:
    group_id: str
    outcome_ids: tuple[str, ...]
    weights: tuple[float, ...] = ()
    expected_sum: float = 1.0
    market_id: str = ""

    def __post_init__(self) -> None:
        if not self.outcome_ids:
            raise ValueError(f"constraint group {self.group_id} has no outcomes")
        if not self.weights:
            object.__setattr__(self, "weights", tuple(1.0 for _ in self.outcome_ids))
        if len(self.weights) != len(self.outcome_ids):
            raise ValueError(
                f"constraint group {self.group_id}: {len(self.weights)} weights "
                f"for {len(self.outcome_ids)} outcomes"
            )
        if any(weight <= 0 for weight in self.weights):
            raise ValueError(f"constraint group {self.group_id}: weights must be positive")

    def weight_of(self, outcome_id: str) -> float:
        return self.weights[self.outcome_ids.index(outcome_id)]


@dataclass(frozen=True)
class GroupSnapshot:
    """Books for every outcome of a constraint group, fetched in one tick."""

    group: ConstraintGroup
    books: Mapping[str, OrderBook]
    liquidity: float
    fetched_at: datetime = field(default_factory=utc_now)

    def age_ms(self, now: datetime) -> float:
        if not self.books:
            return 0.0
        return max(book.age_ms(now) for book in self.books.values())


@dataclass(frozen=True)
class CostEstimate:
    fee: float
    slippage: float
    adverse_selection: float

    @property
    def total(self) -> float:
        return self.fee + self.slippage + self.adverse_selection


@dataclass(frozen=True)
class SignalLeg:
    outcome_id: str
    side: Side
    weight: float
    reference_price: float
    midpoint: float | None = None


@dataclass(frozen=True)
class TradeSignal:
    """Immutable candidate trade.

    ``size`` counts bundle units: each leg trades ``weight * size``.
    A BUY bundle pays ``expected_sum`` per unit at resolution; a SELL
    bundle is minted at ``expected_sum`` per unit and sold.
    """

    group_id: str
    direction: Side
    legs: tuple[SignalLeg, ...]
    edge: float
    size: float
    expected_profit: float
    cost: CostEstimate
    expected_sum: float
    weighted_sum: float
    liquidity: float
    books: Mapping[str, OrderBook] = field(default_factory=dict)
    observed_at: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def profit_density(self) -> float:
        if self.size <= 0:
            return 0.0
        return self.expected_profit / self.size

    @property
    def capital_estimate(self) -> float:
        """Pre-trade spend estimate used to gate the permission check.

        A BUY pays the reference notional plus expected impact and drift,
        with the fee scaled to that priced notional. A SELL spends the
        bundle's collateral plus the fee; impact only lowers its proceeds.
        """
        if self.direction is Side.BUY:
            reference = self.weighted_sum * self.size
            priced = reference + self.cost.slippage + self.cost.adverse_selection
            fee = self.cost.fee * priced / reference if reference > 0 else self.cost.fee
            return priced + fee
        return self.expected_sum * self.size + self.cost.fee


@dataclass(frozen=True)
class LegFill:
    outcome_id: str
    side: Side
    weight: float
    quantity: float
    book_vwap: float
    execution_price: float
    signal_price: float
    midpoint: float | None = None

    @property
    def adverse_move(self) -> float:
        return self.execution_price - self.signal_price


@dataclass(frozen=True)
class TradeResult:
    group_id: str
    direction: Side
    requested_size: float
    filled_size: float
    vwap: float
    fee_paid: float
    slippage: float
    slippage_cost: float
    latency_ms: float
    adverse_move: float
    net_pnl: float
    notional: float
    expected_sum: float
    executed_at: datetime
    observed_at: datetime
    legs: tuple[LegFill, ...] = ()
    success: bool = True
    error: str | None = None

    @classmethod
    def failed(cls, signal: TradeSignal, size: float, error: str, executed_at: datetime) -> "TradeResult":
        return cls(
            group_id=signal.group_id,
            direction=signal.direction,
            requested_size=size,
            filled_size=0.0,
            vwap=0.0,
            fee_paid=0.0,
            slippage=0.0,
            slippage_cost=0.0,
            latency_ms=0.0,
            adverse_move=0.0,
            net_pnl=0.0,
            notional=0.0,
            expected_sum=signal.expected_sum,
            executed_at=executed_at,
            observed_at=signal.observed_at,
            success=False,
            error=error,
        )

    @property
    def capital_spent(self) -> float:
        if self.filled_size <= 0:
            return 0.0
        if self.direction is Side.BUY:
            return self.notional + self.fee_paid
        return self.expected_sum * self.filled_size + self.fee_paid

    @property
    def is_win(self) -> bool:
        return self.success and self.net_pnl > 0
