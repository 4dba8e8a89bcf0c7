"""Tick loop and safety state machine.

One tick: roll the permission window, health-check the feed, fetch every
group's books concurrently, detect and rank signals, then walk the
ranked candidates through hooks, risk, permission and execution one at
a time. Only the fetch phase awaits; everything after it runs without
yielding, so the ledger, risk and permission state never see
concurrent writers.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, Sequence

from arbishark.constraints import groups_from_markets
from arbishark.errors import DataUnavailable, ExecutionFailure, RiskHalted, StaleData
from arbishark.exchanges import SourceHealth
from arbishark.hooks import run_hooks
from arbishark.metrics import EngineSnapshot, publish
from arbishark.models import ConstraintGroup, GroupSnapshot, OrderBook, TradeResult, TradeSignal
from arbishark.risk import RiskMode
from arbishark.runtime import RuntimeContext
from arbishark.strategy import StrategyMode, Thresholds, adaptive_mode

LOGGER = logging.getLogger(__name__)

_STREAM_RETRY_INITIAL_SECONDS = 1.0
_STREAM_RETRY_MAX_SECONDS = 30.0


class EngineState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    TRADING = "trading"
    SAFE_MODE = "safe_mode"
    COOLDOWN = "cooldown"
    STOPPED = "stopped"


@dataclass(frozen=True)
class TickReport:
    tick: int
    state: EngineState
    signals: int = 0
    executed: int = 0
    skipped: int = 0
    fetch_failures: int = 0
    invalid_quotes: int = 0
    data_delay_ms: float = 0.0
    snapshot: EngineSnapshot | None = None


class ArbEngine:
    def __init__(self, context: RuntimeContext) -> None:
        self._ctx = context
        self._settings = context.settings
        self._state = EngineState.IDLE
        self._tick = 0
        self._stop_requested = False
        self._consecutive_failures = 0
        self._cooldown_until: datetime | None = None
        self._markets_refreshed_at: datetime | None = None
        self._liquidity: Dict[str, float] = {}
        self._derive_groups = len(context.constraints) == 0
        self._mode = StrategyMode(self._settings.strategy.strategy_mode)
        self._last_delay_ms = 0.0

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def strategy_mode(self) -> StrategyMode:
        return self._mode

    def start(self) -> None:
        if self._state is EngineState.IDLE:
            self._transition(EngineState.RUNNING, "start")

    def request_stop(self) -> None:
        self._stop_requested = True

    # ---- Loop ----

    async def run_forever(self, max_ticks: int | None = None) -> None:
        stream_task: asyncio.Task[None] | None = None
        if self._settings.data.stream_mode and self._ctx.source.supports_streaming():
            stream_task = asyncio.create_task(self._consume_stream())

        ticks = 0
        try:
            while True:
                loop_start = time.perf_counter()
                await self.tick()
                ticks += 1

                if self._state is EngineState.STOPPED:
                    return
                if self._settings.run_once or (max_ticks is not None and ticks >= max_ticks):
                    return

                elapsed = time.perf_counter() - loop_start
                sleep_seconds = max(0.0, self._settings.poll_interval_seconds - elapsed)
                if sleep_seconds > 0:
                    await asyncio.sleep(sleep_seconds)
        finally:
            if stream_task is not None:
                stream_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stream_task

    async def _consume_stream(self) -> None:
        delay = _STREAM_RETRY_INITIAL_SECONDS
        while self._state is not EngineState.STOPPED:
            try:
                async for update in self._ctx.source.stream_quotes():
                    self._ctx.quote_cache.apply(update)
                    delay = _STREAM_RETRY_INITIAL_SECONDS
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning("quote stream from %s dropped: %s", self._ctx.source.name, exc)
            await asyncio.sleep(delay)
            delay = min(_STREAM_RETRY_MAX_SECONDS, delay * 2)

    # ---- Tick ----

    async def tick(self) -> TickReport:
        self._tick += 1
        if self._state is EngineState.STOPPED:
            return TickReport(tick=self._tick, state=self._state)

        now = self._ctx.clock()
        self._ctx.guard.roll_window(now)
        self._ctx.risk.roll_day(now)

        if self._check_stop(now):
            return self._finish(now)

        if self._state is EngineState.COOLDOWN:
            await self._try_resume(now)
            return self._finish(now)

        if self._state is EngineState.IDLE:
            self._transition(EngineState.RUNNING, "start")

        self._mode = self._select_mode()

        failures = 0
        try:
            await self._check_health()
        except StaleData as exc:
            LOGGER.warning("%s", exc)
            self._enter_safe_mode(str(exc), now)
            return self._finish(now)
        except DataUnavailable as exc:
            LOGGER.warning("health check failed: %s", exc)
            failures += 1

        try:
            await self._refresh_markets(now)
        except DataUnavailable as exc:
            LOGGER.warning("market refresh failed: %s", exc)

        snapshots, fetch_failures = await self._fetch_snapshots(self._ctx.constraints.groups)
        failures += fetch_failures
        if self._record_failures(failures, now):
            return self._finish(now, fetch_failures=failures)

        now = self._ctx.clock()
        try:
            self._check_snapshot_age(snapshots, now)
        except StaleData as exc:
            LOGGER.warning("%s", exc)
            self._enter_safe_mode(str(exc), now)
            return self._finish(now, fetch_failures=failures)

        signals, invalid = self._ctx.detector.scan(snapshots, self._mode)
        executed, skipped = self._process_candidates(signals, now)
        return self._finish(
            now,
            signals=len(signals),
            executed=executed,
            skipped=skipped,
            fetch_failures=failures,
            invalid_quotes=invalid,
        )

    def _process_candidates(self, signals: Sequence[TradeSignal], now: datetime) -> tuple[int, int]:
        ctx = self._ctx
        limits = ctx.detector.thresholds(self._mode)
        executed = 0
        skipped = 0

        for signal in signals:
            if self._check_stop(now):
                break

            outcome = run_hooks(ctx.hooks, signal)
            if outcome.skipped or outcome.signal is None:
                LOGGER.debug("hook skipped %s: %s", signal.group_id, outcome.reason)
                skipped += 1
                continue
            candidate = outcome.signal
            if candidate.size != signal.size:
                candidate = self._resized(candidate, candidate.size, limits)
                if candidate is None:
                    skipped += 1
                    continue

            try:
                ctx.risk.check(candidate.liquidity, now)
            except RiskHalted as exc:
                self._enter_safe_mode(exc.reason, now)
                break

            clamped = ctx.risk.clamp_size(candidate.size)
            if clamped < candidate.size:
                candidate = self._resized(candidate, clamped, limits)
                if candidate is None:
                    skipped += 1
                    continue

            estimate = candidate.capital_estimate
            if not ctx.ledger.can_afford(estimate):
                LOGGER.debug("insufficient cash for %s: need %.4f", candidate.group_id, estimate)
                skipped += 1
                continue
            if not ctx.guard.can_spend(estimate, now):
                LOGGER.debug(
                    "allowance declined %s: need %.4f remaining %.4f",
                    candidate.group_id,
                    estimate,
                    ctx.guard.remaining_allowance,
                )
                skipped += 1
                if self._check_stop(now) or ctx.guard.remaining_allowance <= 0:
                    break
                continue

            self._transition(EngineState.TRADING, candidate.group_id)
            ctx.guard.record_spend(estimate, now)
            result = self._execute(candidate, now)
            self._apply(result, estimate, now)
            executed += 1
            self._transition(EngineState.RUNNING, "trade applied")

            if ctx.risk.mode is RiskMode.SAFE_MODE:
                self._enter_safe_mode(ctx.risk.state.halt_reason, now)
                break

        return executed, skipped

    def _resized(self, signal: TradeSignal, size: float, limits: Thresholds) -> TradeSignal | None:
        repriced = self._ctx.detector.reprice(signal, size)
        if not repriced.expected_profit > limits.min_profit:
            LOGGER.debug(
                "%s at size %.4f falls below profit gate (%.4f)",
                signal.group_id,
                size,
                repriced.expected_profit,
            )
            return None
        return repriced

    def _execute(self, signal: TradeSignal, now: datetime) -> TradeResult:
        try:
            return self._ctx.backend.execute(signal, signal.size)
        except ExecutionFailure as exc:
            LOGGER.warning("execution failed for %s: %s", signal.group_id, exc)
            return TradeResult.failed(signal, signal.size, str(exc), now)

    def _apply(self, result: TradeResult, estimate: float, now: datetime) -> None:
        ctx = self._ctx
        ctx.ledger.apply(result)
        ctx.store.append(result)
        if result.success and result.notional > 0:
            ctx.fee_model.record_actual(result.notional, result.fee_paid)
            if not ctx.fee_model.is_reconciled():
                report = ctx.fee_model.reconciliation_report()
                LOGGER.warning(
                    "fee estimates off by %.4f on average over %d fills (estimated %.4f, paid %.4f)",
                    report.mae,
                    report.sample_count,
                    report.total_estimated,
                    report.total_actual,
                )
        shortfall = ctx.guard.reconcile(estimate, result.capital_spent)
        if shortfall > 0:
            LOGGER.info("%s spent %.4f over its estimate", result.group_id, shortfall)
        ctx.risk.record_trade(result, ctx.ledger.equity(), now)
        LOGGER.info(
            "trade %s %s filled=%.4f/%.4f pnl=%.4f fee=%.4f success=%s",
            result.group_id,
            result.direction.value,
            result.filled_size,
            result.requested_size,
            result.net_pnl,
            result.fee_paid,
            result.success,
        )

    # ---- Safety ----

    def _check_stop(self, now: datetime) -> bool:
        guard = self._ctx.guard
        revoke_file = self._settings.permission.revoke_file
        if revoke_file and Path(revoke_file).exists():
            guard.revoke()

        reason = ""
        if self._stop_requested:
            reason = "stop requested"
        elif guard.is_revoked:
            reason = "permission revoked"
        elif guard.is_expired(now):
            reason = "permission expired"
        if not reason:
            return False
        if self._state is not EngineState.STOPPED:
            self._transition(EngineState.STOPPED, reason)
        return True

    def _enter_safe_mode(self, reason: str, now: datetime) -> None:
        self._transition(EngineState.SAFE_MODE, reason)
        self._ctx.risk.halt(reason, now)
        self._cooldown_until = now + timedelta(seconds=self._settings.safety.safe_mode_cooldown_secs)
        self._transition(EngineState.COOLDOWN, f"until {self._cooldown_until.isoformat()}")

    def _record_failures(self, count: int, now: datetime) -> bool:
        """Adds to the data-failure tally; True when it forced SafeMode."""
        if count <= 0:
            self._consecutive_failures = 0
            return False
        self._consecutive_failures += count
        limit = self._settings.safety.max_consecutive_failures
        if self._consecutive_failures >= limit:
            self._enter_safe_mode(f"{self._consecutive_failures} consecutive data failures", now)
            return True
        return False

    async def _try_resume(self, now: datetime) -> None:
        if self._cooldown_until is not None and now < self._cooldown_until:
            return
        try:
            await self._check_health()
        except (StaleData, DataUnavailable) as exc:
            LOGGER.info("cooldown elapsed but feed still unhealthy: %s", exc)
            return
        if not self._ctx.risk.maybe_resume(now):
            return
        self._consecutive_failures = 0
        self._cooldown_until = None
        self._transition(EngineState.IDLE, "cooldown complete")

    async def _check_health(self) -> SourceHealth:
        timeout = self._settings.data.fetch_timeout_seconds
        try:
            health = await asyncio.wait_for(self._ctx.source.health_check(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise DataUnavailable(f"health check timed out after {timeout:.1f}s") from exc
        if not health.healthy:
            raise DataUnavailable(f"{self._ctx.source.name} unhealthy: {health.detail}")
        self._last_delay_ms = health.data_delay_ms
        limit = self._settings.safety.max_data_delay_ms
        if health.data_delay_ms > limit:
            raise StaleData(health.data_delay_ms, limit)
        return health

    def _check_snapshot_age(self, snapshots: Sequence[GroupSnapshot], now: datetime) -> None:
        """Raises ``StaleData`` when any fetched leg is older than the limit."""
        oldest = max((snapshot.age_ms(now) for snapshot in snapshots), default=0.0)
        self._last_delay_ms = max(self._last_delay_ms, oldest)
        limit = self._settings.safety.max_data_delay_ms
        if oldest > limit:
            raise StaleData(oldest, limit)

    def _select_mode(self) -> StrategyMode:
        strategy = self._settings.strategy
        if not strategy.adaptive:
            return StrategyMode(strategy.strategy_mode)
        return adaptive_mode(
            self._ctx.guard.remaining_fraction,
            strategy.conservative_below,
            strategy.aggressive_above,
        )

    def _transition(self, new_state: EngineState, reason: str) -> None:
        if new_state is self._state:
            return
        LOGGER.info("engine %s -> %s (%s)", self._state.value, new_state.value, reason)
        self._state = new_state

    # ---- Data ----

    async def _refresh_markets(self, now: datetime) -> None:
        data = self._settings.data
        if self._markets_refreshed_at is not None and now - self._markets_refreshed_at < timedelta(
            seconds=data.market_refresh_seconds
        ):
            return
        try:
            markets = await asyncio.wait_for(self._ctx.source.list_markets(), timeout=data.fetch_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise DataUnavailable("market listing timed out") from exc
        self._markets_refreshed_at = now

        active = [market for market in markets if market.active]
        for market in active:
            if market.fee_bps is not None:
                self._ctx.fee_model.observe_rate(market.fee_bps)
            if market.liquidity > 0:
                for outcome_id in market.outcome_ids:
                    self._liquidity[outcome_id] = market.liquidity

        if self._derive_groups:
            for group in groups_from_markets(active):
                self._ctx.constraints.add_group(group)
        LOGGER.debug("refreshed %d markets; %d constraint groups", len(active), len(self._ctx.constraints))

    async def _fetch_snapshots(self, groups: Sequence[ConstraintGroup]) -> tuple[list[GroupSnapshot], int]:
        data = self._settings.data
        semaphore = asyncio.Semaphore(max(1, data.max_fetch_concurrency))
        timeout = data.fetch_timeout_seconds
        use_cache = data.stream_mode

        async def _fetch_book(outcome_id: str) -> OrderBook:
            if use_cache:
                cached = self._ctx.quote_cache.get(
                    outcome_id, self._ctx.clock(), self._settings.safety.max_data_delay_ms
                )
                if cached is not None:
                    return cached
            async with semaphore:
                try:
                    return await asyncio.wait_for(self._ctx.source.get_order_book(outcome_id), timeout=timeout)
                except asyncio.TimeoutError as exc:
                    raise DataUnavailable(
                        f"book fetch timed out after {timeout:.2f}s", outcome_id=outcome_id
                    ) from exc

        async def _fetch_group(group: ConstraintGroup) -> GroupSnapshot:
            books = await asyncio.gather(*(_fetch_book(o) for o in group.outcome_ids), return_exceptions=True)
            for book in books:
                if isinstance(book, BaseException):
                    raise book
            by_outcome = dict(zip(group.outcome_ids, books))
            return GroupSnapshot(
                group=group,
                books=by_outcome,
                liquidity=self._group_liquidity(group, by_outcome),
                fetched_at=self._ctx.clock(),
            )

        results = await asyncio.gather(*(_fetch_group(group) for group in groups), return_exceptions=True)

        snapshots: list[GroupSnapshot] = []
        failures = 0
        for group, result in zip(groups, results):
            if isinstance(result, DataUnavailable):
                failures += 1
                LOGGER.warning("excluding %s this tick: %s", group.group_id, result)
                continue
            if isinstance(result, BaseException):
                raise result
            snapshots.append(result)
        return snapshots, failures

    def _group_liquidity(self, group: ConstraintGroup, books: Dict[str, OrderBook]) -> float:
        known = [self._liquidity[outcome] for outcome in group.outcome_ids if outcome in self._liquidity]
        if known:
            return min(known)
        if not books:
            return 0.0
        return min(book.notional_depth() for book in books.values())

    # ---- Publish ----

    def _finish(self, now: datetime, **counts: int) -> TickReport:
        snapshot = self.snapshot(now, signals=counts.get("signals", 0), executed=counts.get("executed", 0))
        publish(self._ctx.publishers, snapshot)
        return TickReport(
            tick=self._tick,
            state=self._state,
            data_delay_ms=self._last_delay_ms,
            snapshot=snapshot,
            **counts,
        )

    def snapshot(self, now: datetime, *, signals: int = 0, executed: int = 0) -> EngineSnapshot:
        ctx = self._ctx
        return EngineSnapshot(
            total_pnl=ctx.ledger.total_pnl,
            trades_today=ctx.ledger.trades_on(now),
            win_rate=ctx.ledger.win_rate(),
            daily_spent=ctx.guard.spent_today,
            remaining_allowance=ctx.guard.remaining_allowance,
            strategy_mode=self._mode.value,
            data_latency_ms=self._last_delay_ms,
            is_safe_mode=self._state in (EngineState.SAFE_MODE, EngineState.COOLDOWN),
            state=self._state.value,
            tick=self._tick,
            timestamp=now.isoformat(),
            equity=ctx.ledger.equity(),
            consecutive_failures=self._consecutive_failures,
            daily_pnl=ctx.ledger.pnl_on(now),
            avg_profit_per_trade=ctx.ledger.avg_profit_per_trade(),
            signals=signals,
            trades_executed=executed,
        )
