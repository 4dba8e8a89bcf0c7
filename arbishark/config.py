from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, TypeVar

from dotenv import load_dotenv

from arbishark.errors import ConfigInvalid

STRATEGY_MODES = ("conservative", "normal", "aggressive")
REFERENCE_PRICES = ("executable", "midpoint")
DATA_BACKENDS = ("polymarket", "indexer", "static")

T = TypeVar("T")


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_env(name: str, parse: Callable[[str], T], kind: str) -> T | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return parse(raw.strip())
    except ValueError as exc:
        raise ConfigInvalid([f"{name} must be {kind}, got {raw!r}"]) from exc


def _as_float(name: str, default: float) -> float:
    value = _parse_env(name, float, "a number")
    return default if value is None else value


def _as_int(name: str, default: int) -> int:
    value = _parse_env(name, int, "an integer")
    return default if value is None else value


def _as_optional_int(name: str) -> int | None:
    return _parse_env(name, int, "an integer")


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _as_path(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return str(Path(value.strip()).expanduser())


@dataclass(frozen=True)
class PermissionSettings:
    daily_limit: float = 10.0
    duration_days: int = 30
    revoke_file: str = ".revoke_permission"


@dataclass(frozen=True)
class TradingSettings:
    min_spread_threshold: float = 0.02
    min_profit_threshold: float = 0.10
    trade_size: float = 5.0
    max_position_value: float = 50.0
    reference_price: str = "executable"


@dataclass(frozen=True)
class StrategySettings:
    strategy_mode: str = "normal"
    adaptive: bool = False
    conservative_below: float = 0.3
    aggressive_above: float = 0.7
    blocked_groups: List[str] = field(default_factory=list)
    min_edge_samples: int = 0
    probation_size_fraction: float = 0.5


@dataclass(frozen=True)
class SafetySettings:
    max_data_delay_ms: int = 5000
    max_consecutive_failures: int = 3
    safe_mode_cooldown_secs: int = 300


@dataclass(frozen=True)
class RiskSettings:
    max_drawdown: float = 0.20
    max_daily_loss: float = 50.0
    max_consecutive_losses: int = 5
    volatility_threshold: float = 0.15
    min_liquidity: float = 1000.0
    max_position_size: float = 100.0
    volatility_window: int = 100


@dataclass(frozen=True)
class ExecutionSettings:
    fee_bps_default: float = 200.0
    fee_percentile: float = 95.0
    slippage_k: float = 1.0
    slippage_alpha: float = 1.5
    fill_beta: float = 1.0
    latency_base_ms: float = 50.0
    latency_jitter_ms: float = 25.0
    adverse_selection_std: float = 0.001
    execution_failure_rate: float = 0.0
    random_seed: int | None = None


@dataclass(frozen=True)
class DataSourceSettings:
    backend: str = "static"
    gamma_base_url: str = "https://gamma-api.polymarket.com"
    clob_base_url: str = "https://clob.polymarket.com"
    ws_base_url: str = "wss://ws-subscriptions-clob.polymarket.com/ws"
    indexer_url: str = "http://localhost:8080/v1/graphql"
    market_limit: int = 20
    market_ids: List[str] = field(default_factory=list)
    fetch_timeout_seconds: float = 5.0
    max_fetch_concurrency: int = 8
    book_retry_attempts: int = 3
    book_retry_base_delay_seconds: float = 0.2
    book_retry_max_delay_seconds: float = 2.0
    market_refresh_seconds: int = 300
    stream_mode: bool = False
    static_markets_path: str | None = None
    constraint_groups_path: str | None = None


@dataclass(frozen=True)
class AppSettings:
    run_once: bool
    poll_interval_seconds: int
    initial_balance: float
    log_level: str
    trade_history_path: str
    snapshot_path: str | None

    permission: PermissionSettings
    trading: TradingSettings
    strategy: StrategySettings
    safety: SafetySettings
    risk: RiskSettings
    execution: ExecutionSettings
    data: DataSourceSettings


def load_settings() -> AppSettings:
    """Settings from the environment and ``.env``.

    Raises ``ConfigInvalid`` when a numeric variable does not parse.
    """
    load_dotenv(override=False)

    return AppSettings(
        run_once=_as_bool(os.getenv("SHARK_RUN_ONCE"), False),
        poll_interval_seconds=_as_int("SHARK_POLL_INTERVAL_SECONDS", 5),
        initial_balance=_as_float("SHARK_INITIAL_BALANCE", 100.0),
        log_level=os.getenv("SHARK_LOG_LEVEL", "INFO"),
        trade_history_path=os.getenv("SHARK_TRADE_HISTORY_PATH", "data/arbishark_trades.db"),
        snapshot_path=_as_path(os.getenv("SHARK_SNAPSHOT_PATH")),
        permission=PermissionSettings(
            daily_limit=_as_float("SHARK_DAILY_LIMIT", 10.0),
            duration_days=_as_int("SHARK_DURATION_DAYS", 30),
            revoke_file=os.getenv("SHARK_REVOKE_FILE", ".revoke_permission"),
        ),
        trading=TradingSettings(
            min_spread_threshold=_as_float("SHARK_MIN_SPREAD_THRESHOLD", 0.02),
            min_profit_threshold=_as_float("SHARK_MIN_PROFIT_THRESHOLD", 0.10),
            trade_size=_as_float("SHARK_TRADE_SIZE", 5.0),
            max_position_value=_as_float("SHARK_MAX_POSITION_VALUE", 50.0),
            reference_price=os.getenv("SHARK_REFERENCE_PRICE", "executable").strip().lower(),
        ),
        strategy=StrategySettings(
            strategy_mode=os.getenv("SHARK_STRATEGY_MODE", "normal").strip().lower(),
            adaptive=_as_bool(os.getenv("SHARK_ADAPTIVE_STRATEGY"), False),
            conservative_below=_as_float("SHARK_CONSERVATIVE_BELOW", 0.3),
            aggressive_above=_as_float("SHARK_AGGRESSIVE_ABOVE", 0.7),
            blocked_groups=_as_csv(os.getenv("SHARK_BLOCKED_GROUPS")),
            min_edge_samples=_as_int("SHARK_MIN_EDGE_SAMPLES", 0),
            probation_size_fraction=_as_float("SHARK_PROBATION_SIZE_FRACTION", 0.5),
        ),
        safety=SafetySettings(
            max_data_delay_ms=_as_int("SHARK_MAX_DATA_DELAY_MS", 5000),
            max_consecutive_failures=_as_int("SHARK_MAX_CONSECUTIVE_FAILURES", 3),
            safe_mode_cooldown_secs=_as_int("SHARK_SAFE_MODE_COOLDOWN_SECS", 300),
        ),
        risk=RiskSettings(
            max_drawdown=_as_float("SHARK_MAX_DRAWDOWN", 0.20),
            max_daily_loss=_as_float("SHARK_MAX_DAILY_LOSS", 50.0),
            max_consecutive_losses=_as_int("SHARK_MAX_CONSECUTIVE_LOSSES", 5),
            volatility_threshold=_as_float("SHARK_VOLATILITY_THRESHOLD", 0.15),
            min_liquidity=_as_float("SHARK_MIN_LIQUIDITY", 1000.0),
            max_position_size=_as_float("SHARK_MAX_POSITION_SIZE", 100.0),
            volatility_window=_as_int("SHARK_VOLATILITY_WINDOW", 100),
        ),
        execution=ExecutionSettings(
            fee_bps_default=_as_float("SHARK_FEE_BPS_DEFAULT", 200.0),
            fee_percentile=_as_float("SHARK_FEE_PERCENTILE", 95.0),
            slippage_k=_as_float("SHARK_SLIPPAGE_K", 1.0),
            slippage_alpha=_as_float("SHARK_SLIPPAGE_ALPHA", 1.5),
            fill_beta=_as_float("SHARK_FILL_BETA", 1.0),
            latency_base_ms=_as_float("SHARK_LATENCY_BASE_MS", 50.0),
            latency_jitter_ms=_as_float("SHARK_LATENCY_JITTER_MS", 25.0),
            adverse_selection_std=_as_float("SHARK_ADVERSE_SELECTION_STD", 0.001),
            execution_failure_rate=_as_float("SHARK_EXECUTION_FAILURE_RATE", 0.0),
            random_seed=_as_optional_int("SHARK_RANDOM_SEED"),
        ),
        data=DataSourceSettings(
            backend=os.getenv("SHARK_DATA_BACKEND", "static").strip().lower(),
            gamma_base_url=os.getenv("POLYMARKET_GAMMA_BASE_URL", "https://gamma-api.polymarket.com"),
            clob_base_url=os.getenv("POLYMARKET_CLOB_BASE_URL", "https://clob.polymarket.com"),
            ws_base_url=os.getenv("POLYMARKET_WS_BASE_URL", "wss://ws-subscriptions-clob.polymarket.com/ws"),
            indexer_url=os.getenv("SHARK_INDEXER_URL", "http://localhost:8080/v1/graphql"),
            market_limit=_as_int("SHARK_MARKET_LIMIT", 20),
            market_ids=_as_csv(os.getenv("SHARK_MARKET_IDS")),
            fetch_timeout_seconds=_as_float("SHARK_FETCH_TIMEOUT_SECONDS", 5.0),
            max_fetch_concurrency=_as_int("SHARK_MAX_FETCH_CONCURRENCY", 8),
            book_retry_attempts=_as_int("SHARK_BOOK_RETRY_ATTEMPTS", 3),
            book_retry_base_delay_seconds=_as_float("SHARK_BOOK_RETRY_BASE_DELAY_SECONDS", 0.2),
            book_retry_max_delay_seconds=_as_float("SHARK_BOOK_RETRY_MAX_DELAY_SECONDS", 2.0),
            market_refresh_seconds=_as_int("SHARK_MARKET_REFRESH_SECONDS", 300),
            stream_mode=_as_bool(os.getenv("SHARK_STREAM_MODE"), False),
            static_markets_path=_as_path(os.getenv("SHARK_STATIC_MARKETS_PATH")),
            constraint_groups_path=_as_path(os.getenv("SHARK_CONSTRAINT_GROUPS_PATH")),
        ),
    )


def validate_settings(settings: AppSettings) -> AppSettings:
    """Raises ``ConfigInvalid`` listing every out-of-range option."""
    problems: list[str] = []

    def _positive(name: str, value: float) -> None:
        if not value > 0:
            problems.append(f"{name} must be > 0 (got {value})")

    def _non_negative(name: str, value: float) -> None:
        if value < 0:
            problems.append(f"{name} must be >= 0 (got {value})")

    def _unit(name: str, value: float) -> None:
        if not 0.0 <= value <= 1.0:
            problems.append(f"{name} must be within [0, 1] (got {value})")

    _positive("daily_limit", settings.permission.daily_limit)
    _positive("duration_days", settings.permission.duration_days)
    _positive("poll_interval_seconds", settings.poll_interval_seconds)
    _positive("initial_balance", settings.initial_balance)

    trading = settings.trading
    _non_negative("min_spread_threshold", trading.min_spread_threshold)
    _non_negative("min_profit_threshold", trading.min_profit_threshold)
    _positive("trade_size", trading.trade_size)
    _positive("max_position_value", trading.max_position_value)
    if trading.reference_price not in REFERENCE_PRICES:
        problems.append(f"reference_price must be one of {REFERENCE_PRICES} (got {trading.reference_price!r})")

    strategy = settings.strategy
    if strategy.strategy_mode not in STRATEGY_MODES:
        problems.append(f"strategy_mode must be one of {STRATEGY_MODES} (got {strategy.strategy_mode!r})")
    _unit("conservative_below", strategy.conservative_below)
    _unit("aggressive_above", strategy.aggressive_above)
    if strategy.conservative_below > strategy.aggressive_above:
        problems.append("conservative_below must not exceed aggressive_above")
    _non_negative("min_edge_samples", strategy.min_edge_samples)
    _unit("probation_size_fraction", strategy.probation_size_fraction)

    safety = settings.safety
    _positive("max_data_delay_ms", safety.max_data_delay_ms)
    _positive("max_consecutive_failures", safety.max_consecutive_failures)
    _non_negative("safe_mode_cooldown_secs", safety.safe_mode_cooldown_secs)

    risk = settings.risk
    _unit("max_drawdown", risk.max_drawdown)
    _non_negative("max_daily_loss", risk.max_daily_loss)
    _positive("max_consecutive_losses", risk.max_consecutive_losses)
    _non_negative("volatility_threshold", risk.volatility_threshold)
    _non_negative("min_liquidity", risk.min_liquidity)
    _positive("max_position_size", risk.max_position_size)
    if risk.volatility_window < 2:
        problems.append(f"volatility_window must be >= 2 (got {risk.volatility_window})")

    execution = settings.execution
    _non_negative("fee_bps_default", execution.fee_bps_default)
    if not 0.0 <= execution.fee_percentile <= 100.0:
        problems.append(f"fee_percentile must be within [0, 100] (got {execution.fee_percentile})")
    _non_negative("slippage_k", execution.slippage_k)
    if not 1.3 <= execution.slippage_alpha <= 1.8:
        problems.append(f"slippage_alpha must be within [1.3, 1.8] (got {execution.slippage_alpha})")
    _non_negative("fill_beta", execution.fill_beta)
    _non_negative("latency_base_ms", execution.latency_base_ms)
    _non_negative("latency_jitter_ms", execution.latency_jitter_ms)
    _non_negative("adverse_selection_std", execution.adverse_selection_std)
    _unit("execution_failure_rate", execution.execution_failure_rate)

    data = settings.data
    if data.backend not in DATA_BACKENDS:
        problems.append(f"data backend must be one of {DATA_BACKENDS} (got {data.backend!r})")
    _positive("fetch_timeout_seconds", data.fetch_timeout_seconds)
    _positive("max_fetch_concurrency", data.max_fetch_concurrency)
    _positive("market_limit", data.market_limit)

    if problems:
        raise ConfigInvalid(problems)
    return settings
