"""Error taxonomy for the arbitrage engine.

Only ``ConfigInvalid`` and an explicit external stop are terminal.
Everything else is either excluded from the current tick, recorded as a
losing trade, or handled by the SafeMode/Cooldown backoff.
"""

from __future__ import annotations


class ArbisharkError(Exception):
    """Base class for all engine errors."""


class DataUnavailable(ArbisharkError):
    """A market data source was unreachable or timed out."""

    def __init__(self, message: str, *, outcome_id: str | None = None) -> None:
        super().__init__(message)
        self.outcome_id = outcome_id


class StaleData(ArbisharkError):
    """Snapshot age exceeds the configured freshness threshold."""

    def __init__(self, data_delay_ms: float, max_data_delay_ms: float) -> None:
        super().__init__(
            f"data delay {data_delay_ms:.0f}ms exceeds limit {max_data_delay_ms:.0f}ms"
        )
        self.data_delay_ms = data_delay_ms
        self.max_data_delay_ms = max_data_delay_ms


class InvalidQuote(ArbisharkError):
    """Order book with non-positive prices or unordered levels."""


class PermissionDenied(ArbisharkError):
    """Spend recorded without a matching approval."""


class RiskHalted(ArbisharkError):
    """Circuit breaker tripped."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ExecutionFailure(ArbisharkError):
    """Simulated or real settlement failure."""


class ConfigInvalid(ArbisharkError):
    """Out-of-range configuration found at startup."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("invalid configuration: " + "; ".join(problems))
        self.problems = list(problems)
