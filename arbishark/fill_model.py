from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FillModelConfig:
    """Partial-fill model configuration.

    Parameters
    ----------
    beta:
        Sensitivity of the fill ratio to order size. Larger values
        fill less of big orders. Default 1.0.
    """

    beta: float = 1.0


class FillModel:
    """Expected fill ratio ``min(1, L / (L + size * beta))``."""

    def __init__(self, config: FillModelConfig | None = None) -> None:
        self._config = config or FillModelConfig()

    @property
    def config(self) -> FillModelConfig:
        return self._config

    def fill_ratio(self, size: float, liquidity: float) -> float:
        if liquidity <= 0:
            return 0.0
        if size <= 0:
            return 1.0
        return min(1.0, liquidity / (liquidity + size * self._config.beta))

    def filled_size(self, size: float, liquidity: float, book_depth: float | None = None) -> float:
        """Modeled fill, additionally capped by available book depth."""
        filled = size * self.fill_ratio(size, liquidity)
        if book_depth is not None:
            filled = min(filled, max(0.0, book_depth))
        return filled
