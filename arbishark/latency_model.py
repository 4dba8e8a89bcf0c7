"""Latency between signal and execution, and the price drift it causes."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Callable

from arbishark.models import Side

# (price, elapsed_ms, side, rng) -> repriced value
DriftFunction = Callable[[float, float, Side, random.Random], float]


@dataclass(frozen=True)
class LatencyConfig:
    """Latency model configuration.

    Parameters
    ----------
    base_ms:
        Fixed delay between signal and execution. Default 50.
    jitter_ms:
        Uniform jitter added on top of ``base_ms``. Default 25.
    drift_std:
        Standard deviation of relative price drift per second of
        delay. Default 0.001.
    adverse_bias:
        Mean relative drift per second against the trade. Default 0.0.
    """

    base_ms: float = 50.0
    jitter_ms: float = 25.0
    drift_std: float = 0.001
    adverse_bias: float = 0.0


def gaussian_drift(drift_std: float, adverse_bias: float = 0.0) -> DriftFunction:
    """Brownian drift scaled by sqrt(elapsed seconds)."""

    def _drift(price: float, elapsed_ms: float, side: Side, rng: random.Random) -> float:
        seconds = max(0.0, elapsed_ms) / 1000.0
        shock = rng.gauss(0.0, drift_std * math.sqrt(seconds)) if drift_std > 0 else 0.0
        bias = side.sign * adverse_bias * seconds
        return max(0.0, price * (1.0 + shock + bias))

    return _drift


def no_drift(price: float, elapsed_ms: float, side: Side, rng: random.Random) -> float:
    return price


class LatencyModel:
    def __init__(
        self,
        config: LatencyConfig | None = None,
        rng: random.Random | None = None,
        drift: DriftFunction | None = None,
    ) -> None:
        self._config = config or LatencyConfig()
        self._rng = rng or random.Random()
        self._drift = drift or gaussian_drift(self._config.drift_std, self._config.adverse_bias)

    @property
    def config(self) -> LatencyConfig:
        return self._config

    def sample_delay_ms(self) -> float:
        jitter = self._rng.uniform(0.0, self._config.jitter_ms) if self._config.jitter_ms > 0 else 0.0
        return self._config.base_ms + jitter

    def reprice(self, price: float, elapsed_ms: float, side: Side) -> float:
        return self._drift(price, elapsed_ms, side, self._rng)

    def adverse_selection_estimate(self, notional: float) -> float:
        """Expected absolute drift cost over the base delay."""
        seconds = (self._config.base_ms + self._config.jitter_ms / 2.0) / 1000.0
        expected_abs = self._config.drift_std * math.sqrt(seconds) * math.sqrt(2.0 / math.pi)
        return abs(notional) * (expected_abs + max(0.0, self._config.adverse_bias) * seconds)
