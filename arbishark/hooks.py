"""Pre-trade decision hooks.

A hook receives the immutable candidate signal and answers ``Continue``,
``Skip(reason)`` or ``Modify(new_size)``. Hooks run in order; the first
``Skip`` ends the chain and a ``Modify`` is seen by every later hook.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Sequence, Union

from arbishark.models import TradeSignal
from arbishark.trade_store import TradeStore

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Continue:
    pass


@dataclass(frozen=True)
class Skip:
    reason: str


@dataclass(frozen=True)
class Modify:
    new_size: float


HookDecision = Union[Continue, Skip, Modify]
DecisionHook = Callable[[TradeSignal], HookDecision]


@dataclass(frozen=True)
class HookOutcome:
    signal: TradeSignal | None
    reason: str = ""

    @property
    def skipped(self) -> bool:
        return self.signal is None


def run_hooks(hooks: Sequence[DecisionHook], signal: TradeSignal) -> HookOutcome:
    current = signal
    for hook in hooks:
        decision = hook(current)
        if isinstance(decision, Skip):
            return HookOutcome(signal=None, reason=decision.reason)
        if isinstance(decision, Modify):
            if decision.new_size <= 0:
                return HookOutcome(signal=None, reason=f"hook sized {signal.group_id} to zero")
            current = replace(current, size=decision.new_size)
        elif not isinstance(decision, Continue):
            raise TypeError(f"hook returned {decision!r}, expected Continue, Skip or Modify")
    return HookOutcome(signal=current)


# ---------------------------------------------------------------------------
# Built-in hooks
# ---------------------------------------------------------------------------


def blocklist_hook(group_ids: Iterable[str]) -> DecisionHook:
    blocked = frozenset(group_ids)

    def _hook(signal: TradeSignal) -> HookDecision:
        if signal.group_id in blocked:
            return Skip(f"{signal.group_id} is blocklisted")
        return Continue()

    return _hook


def max_size_hook(limit: float) -> DecisionHook:
    def _hook(signal: TradeSignal) -> HookDecision:
        if signal.size > limit:
            return Modify(limit)
        return Continue()

    return _hook


def probation_hook(store: TradeStore, min_samples: int, fraction: float) -> DecisionHook:
    """Scales down groups with too few realized trades to trust their edge."""

    def _hook(signal: TradeSignal) -> HookDecision:
        if min_samples <= 0:
            return Continue()
        stats = store.edge_statistics(signal.group_id)
        if stats.trusted(min_samples):
            return Continue()
        LOGGER.debug(
            "probation sizing %s: %d/%d samples",
            signal.group_id,
            stats.samples,
            min_samples,
        )
        return Modify(signal.size * fraction)

    return _hook
