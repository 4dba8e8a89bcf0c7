"""Proportional fee model with a conservative default rate.

The fee charged on a fill is ``notional * fee_bps / 10000``. Until a
venue fee is known the model charges the configured percentile of the
fee rates it has observed, so estimates err on the expensive side.

Usage::

    model = FeeModel(FeeModelConfig(default_fee_bps=200.0))
    model.observe_rate(150.0)
    estimate = model.estimate(notional=25.0)
    model.record_actual(notional=25.0, actual_fee=0.40)
    report = model.reconciliation_report()
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

import numpy as np


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeeModelConfig:
    """Configuration for the fee model.

    Parameters
    ----------
    default_fee_bps:
        Rate charged before any fee rate has been observed. Default 200
        (the Polymarket taker base fee).
    estimate_percentile:
        Percentile of observed rates used as the working estimate.
        Default 95.
    window_size:
        Number of recent observed rates, and of realized fees kept for
        reconciliation. Default 500.
    reconciliation_tolerance:
        Mean absolute fee error, in currency, above which the
        reconciliation report flags a discrepancy. Default 0.005.
    """

    default_fee_bps: float = 200.0
    estimate_percentile: float = 95.0
    window_size: int = 500
    reconciliation_tolerance: float = 0.005


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeeEstimate:
    notional: float
    rate_bps: float
    fee: float


@dataclass(frozen=True)
class FeeReconciliationReport:
    sample_count: int
    mean_error: float
    mae: float
    total_estimated: float
    total_actual: float

    def within(self, tolerance: float) -> bool:
        return self.mae <= tolerance


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class FeeModel:
    def __init__(self, config: FeeModelConfig | None = None) -> None:
        self._config = config or FeeModelConfig()
        self._observed: deque[float] = deque(maxlen=max(1, self._config.window_size))
        self._errors: deque[tuple[float, float]] = deque(maxlen=max(1, self._config.window_size))

    @property
    def config(self) -> FeeModelConfig:
        return self._config

    @property
    def sample_count(self) -> int:
        return len(self._observed)

    def observe_rate(self, fee_bps: float) -> None:
        if fee_bps < 0:
            raise ValueError(f"fee rate must be non-negative, got {fee_bps}")
        self._observed.append(float(fee_bps))

    def rate_bps(self) -> float:
        if not self._observed:
            return self._config.default_fee_bps
        return float(np.percentile(np.asarray(self._observed), self._config.estimate_percentile))

    def fee_for(self, notional: float, rate_bps: float | None = None) -> float:
        rate = self.rate_bps() if rate_bps is None else rate_bps
        return max(0.0, notional) * rate / 10000.0

    def estimate(self, notional: float) -> FeeEstimate:
        rate = self.rate_bps()
        return FeeEstimate(notional=notional, rate_bps=rate, fee=self.fee_for(notional, rate))

    def record_actual(self, notional: float, actual_fee: float) -> None:
        """Pairs a realized fee with what the current rate would have charged.

        Realized fees only feed reconciliation. The rate window holds venue
        rates alone, so the model never confirms its own estimates.
        """
        self._errors.append((self.fee_for(notional), actual_fee))

    def reconciliation_report(self, min_samples: int = 1) -> FeeReconciliationReport | None:
        if len(self._errors) < max(1, min_samples):
            return None
        estimated = np.asarray([pair[0] for pair in self._errors])
        actual = np.asarray([pair[1] for pair in self._errors])
        errors = estimated - actual
        return FeeReconciliationReport(
            sample_count=len(self._errors),
            mean_error=float(errors.mean()),
            mae=float(np.abs(errors).mean()),
            total_estimated=float(estimated.sum()),
            total_actual=float(actual.sum()),
        )

    def is_reconciled(self) -> bool:
        report = self.reconciliation_report()
        return report is None or report.within(self._config.reconciliation_tolerance)
