"""Constraint groups over linked outcomes and their live edge.

A group says ``sum(weight_i * price_i) == expected_sum`` must hold for
its outcomes (two complementary outcomes summing to 1.0 is the common
case). The edge is the absolute deviation from that identity.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

from arbishark.errors import InvalidQuote
from arbishark.models import ConstraintGroup, Market, OrderBook, ReferencePrice, Side

LOGGER = logging.getLogger(__name__)


def weighted_sum(group: ConstraintGroup, prices: Mapping[str, float]) -> float:
    missing = [outcome for outcome in group.outcome_ids if outcome not in prices]
    if missing:
        raise InvalidQuote(f"{group.group_id}: missing prices for {', '.join(missing)}")
    return math.fsum(
        weight * prices[outcome] for outcome, weight in zip(group.outcome_ids, group.weights)
    )


def evaluate(group: ConstraintGroup, prices: Mapping[str, float]) -> float:
    """Edge of ``group`` at ``prices``; zero exactly when the identity holds."""
    return abs(group.expected_sum - weighted_sum(group, prices))


@dataclass(frozen=True)
class ConstraintEvaluation:
    """Edge of a group at tradable prices.

    ``direction`` is BUY when the bundle is cheap (sum below expected)
    and SELL when it is rich. ``direction`` is None when no side is
    executable at a favourable price.
    """

    group_id: str
    direction: Side | None
    edge: float
    weighted_sum: float
    prices: Dict[str, float]
    midpoints: Dict[str, float | None]
    crossed_outcomes: tuple[str, ...] = ()


class ConstraintEngine:
    def __init__(self, groups: Iterable[ConstraintGroup] = ()) -> None:
        self._groups: Dict[str, ConstraintGroup] = {}
        for group in groups:
            self.add_group(group)

    @property
    def groups(self) -> tuple[ConstraintGroup, ...]:
        return tuple(self._groups.values())

    def __len__(self) -> int:
        return len(self._groups)

    def add_group(self, group: ConstraintGroup) -> None:
        if group.group_id in self._groups:
            LOGGER.debug("replacing constraint group %s", group.group_id)
        self._groups[group.group_id] = group

    def remove_group(self, group_id: str) -> None:
        self._groups.pop(group_id, None)

    def get(self, group_id: str) -> ConstraintGroup | None:
        return self._groups.get(group_id)

    def evaluate(self, group: ConstraintGroup, prices: Mapping[str, float]) -> float:
        return evaluate(group, prices)

    def evaluate_books(
        self,
        group: ConstraintGroup,
        books: Mapping[str, OrderBook],
        reference: ReferencePrice = ReferencePrice.EXECUTABLE,
    ) -> ConstraintEvaluation:
        """Validates the group's books and computes the edge at reference prices.

        Raises ``InvalidQuote`` for malformed books or a missing side.
        """
        for outcome in group.outcome_ids:
            book = books.get(outcome)
            if book is None:
                raise InvalidQuote(f"{group.group_id}: no book for {outcome}")
            book.validate()

        midpoints = {outcome: books[outcome].midpoint for outcome in group.outcome_ids}
        crossed = tuple(outcome for outcome in group.outcome_ids if books[outcome].is_crossed)

        if reference is ReferencePrice.MIDPOINT:
            if any(value is None for value in midpoints.values()):
                raise InvalidQuote(f"{group.group_id}: empty book, no midpoint")
            prices = {outcome: float(value) for outcome, value in midpoints.items()}
            total = weighted_sum(group, prices)
            if total < group.expected_sum:
                direction: Side | None = Side.BUY
            elif total > group.expected_sum:
                direction = Side.SELL
            else:
                direction = None
            return ConstraintEvaluation(
                group_id=group.group_id,
                direction=direction,
                edge=abs(group.expected_sum - total),
                weighted_sum=total,
                prices=prices,
                midpoints=midpoints,
                crossed_outcomes=crossed,
            )

        asks = _top_prices(group, books, Side.BUY)
        if asks is not None:
            total = weighted_sum(group, asks)
            if total < group.expected_sum:
                return ConstraintEvaluation(
                    group_id=group.group_id,
                    direction=Side.BUY,
                    edge=abs(group.expected_sum - total),
                    weighted_sum=total,
                    prices=asks,
                    midpoints=midpoints,
                    crossed_outcomes=crossed,
                )

        bids = _top_prices(group, books, Side.SELL)
        if bids is not None:
            total = weighted_sum(group, bids)
            if total > group.expected_sum:
                return ConstraintEvaluation(
                    group_id=group.group_id,
                    direction=Side.SELL,
                    edge=abs(group.expected_sum - total),
                    weighted_sum=total,
                    prices=bids,
                    midpoints=midpoints,
                    crossed_outcomes=crossed,
                )

        return ConstraintEvaluation(
            group_id=group.group_id,
            direction=None,
            edge=0.0,
            weighted_sum=group.expected_sum,
            prices={},
            midpoints=midpoints,
            crossed_outcomes=crossed,
        )


def _top_prices(
    group: ConstraintGroup,
    books: Mapping[str, OrderBook],
    side: Side,
) -> Dict[str, float] | None:
    prices: Dict[str, float] = {}
    for outcome in group.outcome_ids:
        levels = books[outcome].levels(side)
        if not levels:
            return None
        prices[outcome] = levels[0].price
    return prices


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_constraint_groups(path: str | None) -> list[ConstraintGroup]:
    if not path:
        return []

    groups_path = Path(path)
    if not groups_path.exists():
        LOGGER.warning("constraint groups file not found: %s", path)
        return []

    try:
        payload = json.loads(groups_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        LOGGER.warning("failed to parse constraint groups %s: %s", path, exc)
        return []

    raw_groups = payload.get("groups") if isinstance(payload, dict) else payload
    if not isinstance(raw_groups, list):
        LOGGER.warning("constraint groups must be a list or {\"groups\": [...]}: %s", path)
        return []

    parsed: list[ConstraintGroup] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_groups):
        group = _parse_group(item, index)
        if group is None:
            continue
        if group.group_id in seen:
            LOGGER.warning("duplicate constraint group %s ignored", group.group_id)
            continue
        seen.add(group.group_id)
        parsed.append(group)
    return parsed


def _parse_group(item: Any, index: int) -> ConstraintGroup | None:
    if not isinstance(item, dict):
        return None
    outcome_ids = tuple(str(value).strip() for value in item.get("outcome_ids") or [] if str(value).strip())
    if not outcome_ids:
        return None
    weights_raw = item.get("weights") or []
    try:
        weights = tuple(float(value) for value in weights_raw)
        expected_sum = float(item.get("expected_sum", 1.0))
        return ConstraintGroup(
            group_id=str(item.get("group_id") or f"group_{index}").strip(),
            outcome_ids=outcome_ids,
            weights=weights,
            expected_sum=expected_sum,
            market_id=str(item.get("market_id") or "").strip(),
        )
    except (TypeError, ValueError) as exc:
        LOGGER.warning("skipping constraint group #%d: %s", index, exc)
        return None


def groups_from_markets(markets: Iterable[Market]) -> list[ConstraintGroup]:
    """One sum-to-one group per active market with two or more outcomes."""
    groups: list[ConstraintGroup] = []
    for market in markets:
        if not market.active or len(market.outcome_ids) < 2:
            continue
        groups.append(
            ConstraintGroup(
                group_id=market.market_id,
                outcome_ids=tuple(market.outcome_ids),
                market_id=market.market_id,
            )
        )
    return groups
