"""Process-wide collaborators, built once at startup and closed at shutdown."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List

from arbishark.config import AppSettings
from arbishark.constraints import ConstraintEngine, load_constraint_groups
from arbishark.exchanges import MarketDataSource, build_market_source
from arbishark.execution_model import (
    ExecutionBackend,
    ExecutionModelConfig,
    ExecutionSimulator,
    SimulatedExecution,
)
from arbishark.fee_model import FeeModel, FeeModelConfig
from arbishark.fill_model import FillModel, FillModelConfig
from arbishark.hooks import DecisionHook, blocklist_hook, probation_hook
from arbishark.latency_model import LatencyConfig, LatencyModel
from arbishark.ledger import Ledger
from arbishark.metrics import JsonFileSnapshotPublisher, LogSnapshotPublisher, SnapshotPublisher
from arbishark.models import ReferencePrice, utc_now
from arbishark.permission_guard import PermissionConfig, PermissionGuard
from arbishark.quote_cache import QuoteCache
from arbishark.risk import RiskManager
from arbishark.slippage_model import SlippageConfig, SlippageModel
from arbishark.strategy import ArbitrageDetector, DetectorConfig
from arbishark.trade_store import TradeStore

LOGGER = logging.getLogger(__name__)


@dataclass
class RuntimeContext:
    settings: AppSettings
    source: MarketDataSource
    constraints: ConstraintEngine
    detector: ArbitrageDetector
    backend: ExecutionBackend
    fee_model: FeeModel
    guard: PermissionGuard
    risk: RiskManager
    ledger: Ledger
    store: TradeStore
    hooks: List[DecisionHook] = field(default_factory=list)
    publishers: List[SnapshotPublisher] = field(default_factory=list)
    clock: Callable[[], datetime] = utc_now
    rng: random.Random = field(default_factory=random.Random)
    quote_cache: QuoteCache = field(default_factory=QuoteCache)

    async def aclose(self) -> None:
        try:
            await self.source.aclose()
        finally:
            self.store.close()


def build_runtime(
    settings: AppSettings,
    *,
    source: MarketDataSource | None = None,
    store: TradeStore | None = None,
    clock: Callable[[], datetime] = utc_now,
    rng: random.Random | None = None,
) -> RuntimeContext:
    rng = rng or random.Random(settings.execution.random_seed)
    execution = settings.execution

    fee_model = FeeModel(
        FeeModelConfig(
            default_fee_bps=execution.fee_bps_default,
            estimate_percentile=execution.fee_percentile,
        )
    )
    simulator = ExecutionSimulator(
        fee_model=fee_model,
        slippage_model=SlippageModel(SlippageConfig(k=execution.slippage_k, alpha=execution.slippage_alpha)),
        fill_model=FillModel(FillModelConfig(beta=execution.fill_beta)),
        latency_model=LatencyModel(
            LatencyConfig(
                base_ms=execution.latency_base_ms,
                jitter_ms=execution.latency_jitter_ms,
                drift_std=execution.adverse_selection_std,
            ),
            rng=rng,
        ),
        config=ExecutionModelConfig(failure_rate=execution.execution_failure_rate),
        rng=rng,
        clock=clock,
    )

    constraints = ConstraintEngine(load_constraint_groups(settings.data.constraint_groups_path))
    trading = settings.trading
    detector = ArbitrageDetector(
        constraints,
        simulator,
        DetectorConfig(
            min_spread_threshold=trading.min_spread_threshold,
            min_profit_threshold=trading.min_profit_threshold,
            trade_size=trading.trade_size,
            max_position_value=trading.max_position_value,
            reference_price=ReferencePrice(trading.reference_price),
        ),
    )

    store = store or TradeStore(settings.trade_history_path)
    history = store.load_all()
    ledger = Ledger.replay(settings.initial_balance, history)
    if history:
        LOGGER.info("replayed %d trades; equity=%.4f", len(history), ledger.equity())

    guard = PermissionGuard(
        PermissionConfig(
            daily_limit=settings.permission.daily_limit,
            duration_days=settings.permission.duration_days,
        ),
        clock=clock,
    )
    risk = RiskManager(
        settings.risk,
        initial_equity=ledger.equity(),
        cooldown_seconds=settings.safety.safe_mode_cooldown_secs,
        clock=clock,
    )

    hooks: list[DecisionHook] = []
    if settings.strategy.blocked_groups:
        hooks.append(blocklist_hook(settings.strategy.blocked_groups))
    if settings.strategy.min_edge_samples > 0:
        hooks.append(
            probation_hook(store, settings.strategy.min_edge_samples, settings.strategy.probation_size_fraction)
        )

    publishers: list[SnapshotPublisher] = [LogSnapshotPublisher()]
    if settings.snapshot_path:
        publishers.append(JsonFileSnapshotPublisher(settings.snapshot_path))

    return RuntimeContext(
        settings=settings,
        source=source or build_market_source(settings.data),
        constraints=constraints,
        detector=detector,
        backend=SimulatedExecution(simulator),
        fee_model=fee_model,
        guard=guard,
        risk=risk,
        ledger=ledger,
        store=store,
        hooks=hooks,
        publishers=publishers,
        clock=clock,
        rng=rng,
    )
