from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from typing import Sequence

from arbishark.config import DATA_BACKENDS, AppSettings, load_settings, validate_settings
from arbishark.engine import ArbEngine
from arbishark.errors import ConfigInvalid
from arbishark.logging_setup import configure_logging
from arbishark.runtime import build_runtime

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Permission-guarded constraint arbitrage engine (paper execution)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and exit",
    )
    parser.add_argument(
        "--ticks",
        type=int,
        default=None,
        help="Stop after N ticks",
    )
    parser.add_argument(
        "--source",
        choices=DATA_BACKENDS,
        default=None,
        help="Market data backend (overrides SHARK_DATA_BACKEND)",
    )
    parser.add_argument(
        "--groups",
        type=str,
        default=None,
        help="Constraint groups JSON file",
    )
    parser.add_argument(
        "--markets",
        type=str,
        default=None,
        help="Markets JSON file for the static backend",
    )
    parser.add_argument(
        "--stream",
        action="store_true",
        help="Feed books from the quote stream with REST fallback",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (overrides SHARK_LOG_LEVEL)",
    )
    return parser.parse_args(argv)


def apply_args(settings: AppSettings, args: argparse.Namespace) -> AppSettings:
    if args.once:
        settings = replace(settings, run_once=True)
    if args.log_level:
        settings = replace(settings, log_level=args.log_level)

    data = settings.data
    if args.source:
        data = replace(data, backend=args.source)
    if args.groups:
        data = replace(data, constraint_groups_path=args.groups)
    if args.markets:
        data = replace(data, static_markets_path=args.markets)
    if args.stream:
        data = replace(data, stream_mode=True)
    return replace(settings, data=data)


async def _run(settings: AppSettings, max_ticks: int | None) -> None:
    runtime = build_runtime(settings)
    engine = ArbEngine(runtime)

    LOGGER.info(
        "arbishark source=%s groups=%d daily_limit=%.2f mode=%s%s poll_interval=%ss stream=%s",
        settings.data.backend,
        len(runtime.constraints),
        settings.permission.daily_limit,
        settings.strategy.strategy_mode,
        " (adaptive)" if settings.strategy.adaptive else "",
        settings.poll_interval_seconds,
        settings.data.stream_mode,
    )
    try:
        await engine.run_forever(max_ticks=max_ticks)
    finally:
        await runtime.aclose()
    LOGGER.info(
        "engine finished state=%s pnl=%.4f equity=%.4f trades=%d",
        engine.state.value,
        runtime.ledger.total_pnl,
        runtime.ledger.equity(),
        runtime.ledger.trade_count,
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = apply_args(load_settings(), args)
    except ConfigInvalid as exc:
        configure_logging(args.log_level or "INFO")
        for problem in exc.problems:
            LOGGER.error("invalid config: %s", problem)
        return 2
    configure_logging(settings.log_level)

    try:
        validate_settings(settings)
    except ConfigInvalid as exc:
        for problem in exc.problems:
            LOGGER.error("invalid config: %s", problem)
        return 2

    try:
        asyncio.run(_run(settings, args.ticks))
    except KeyboardInterrupt:
        LOGGER.info("interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
