"""Non-linear market impact.

Impact grows superlinearly with the order's share of available
liquidity::

    effective_price = price * (1 + k * (size / liquidity) ** alpha)

for buys, and ``price * (1 - impact)`` for sells, so large orders are
punished disproportionately.
"""

from __future__ import annotations

from dataclasses import dataclass

from arbishark.models import Side

ALPHA_RANGE = (1.3, 1.8)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SlippageConfig:
    """Configuration for the slippage model.

    Parameters
    ----------
    k:
        Impact coefficient. Default 1.0.
    alpha:
        Power-law exponent, within [1.3, 1.8]. Default 1.5.
    max_impact:
        Ceiling on the impact fraction so sells never price below zero.
        Default 0.99.
    """

    k: float = 1.0
    alpha: float = 1.5
    max_impact: float = 0.99

    def __post_init__(self) -> None:
        low, high = ALPHA_RANGE
        if not low <= self.alpha <= high:
            raise ValueError(f"slippage alpha must be within [{low}, {high}], got {self.alpha}")
        if self.k < 0:
            raise ValueError(f"slippage k must be non-negative, got {self.k}")


@dataclass(frozen=True)
class ImpactEstimate:
    size: float
    liquidity: float
    depth_fraction: float
    impact: float
    blocked: bool = False


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class SlippageModel:
    def __init__(self, config: SlippageConfig | None = None) -> None:
        self._config = config or SlippageConfig()

    @property
    def config(self) -> SlippageConfig:
        return self._config

    def estimate_impact(self, size: float, liquidity: float) -> ImpactEstimate:
        """Impact as a fraction of price; blocked when there is no liquidity."""
        if size <= 0:
            return ImpactEstimate(size=size, liquidity=liquidity, depth_fraction=0.0, impact=0.0)
        if liquidity <= 0:
            return ImpactEstimate(
                size=size,
                liquidity=liquidity,
                depth_fraction=float("inf"),
                impact=self._config.max_impact,
                blocked=True,
            )
        fraction = size / liquidity
        impact = min(self._config.max_impact, self._config.k * fraction**self._config.alpha)
        return ImpactEstimate(size=size, liquidity=liquidity, depth_fraction=fraction, impact=impact)

    def effective_price(self, price: float, size: float, liquidity: float, side: Side = Side.BUY) -> float:
        impact = self.estimate_impact(size, liquidity).impact
        return price * (1.0 + side.sign * impact)

    def cost(self, price: float, size: float, liquidity: float) -> float:
        """Currency cost of impact for ``size`` units at ``price``."""
        return price * self.estimate_impact(size, liquidity).impact * size

    def max_size_for_edge(self, edge: float, price: float, liquidity: float) -> float:
        """Largest size whose impact per unit stays below ``edge``.

        Solves ``price * k * (s / L) ** alpha == edge`` for ``s``.
        """
        if edge <= 0 or price <= 0 or liquidity <= 0:
            return 0.0
        if self._config.k <= 0:
            return float("inf")
        ratio = edge / (price * self._config.k)
        return liquidity * ratio ** (1.0 / self._config.alpha)
