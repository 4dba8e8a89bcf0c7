"""Append-only SQLite trade history.

One row per ``TradeResult``. Rows are never updated or deleted; the
history is used to rebuild the ledger on restart and to decide whether
a group has enough realized trades to trust its edge estimate.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator

import numpy as np

from arbishark.models import LegFill, Side, TradeResult

LOGGER = logging.getLogger(__name__)

DB_FILENAME = "arbishark_trades.db"

SCHEMA_VERSION = 1

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS trades (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    trade_id        TEXT NOT NULL UNIQUE,
    group_id        TEXT NOT NULL,
    direction       TEXT NOT NULL,
    requested_size  REAL NOT NULL,
    filled_size     REAL NOT NULL,
    vwap            REAL NOT NULL,
    fee_paid        REAL NOT NULL,
    slippage        REAL NOT NULL,
    slippage_cost   REAL NOT NULL,
    latency_ms      REAL NOT NULL,
    adverse_move    REAL NOT NULL,
    net_pnl         REAL NOT NULL,
    notional        REAL NOT NULL,
    expected_sum    REAL NOT NULL,
    executed_at     TEXT NOT NULL,
    observed_at     TEXT NOT NULL,
    legs_json       TEXT NOT NULL,
    success         INTEGER NOT NULL,
    error           TEXT,
    created_at      REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_trades_group ON trades(group_id);
"""

_COLUMNS = (
    "group_id, direction, requested_size, filled_size, vwap, fee_paid, slippage, "
    "slippage_cost, latency_ms, adverse_move, net_pnl, notional, expected_sum, "
    "executed_at, observed_at, legs_json, success, error"
)
_PLACEHOLDERS = ", ".join("?" for _ in range(len(_COLUMNS.split(",")) + 2))


@dataclass(frozen=True)
class EdgeStats:
    group_id: str
    samples: int
    mean_pnl: float
    pnl_std: float
    win_rate: float

    def trusted(self, min_samples: int) -> bool:
        return self.samples >= min_samples


class TradeStore:
    """SQLite-backed append-only trade log."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        if db_path is None:
            db_path = Path("data") / DB_FILENAME
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._open()

    def _open(self) -> None:
        self._conn = sqlite3.connect(self._db_path, isolation_level="DEFERRED")
        if self._db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        cur = self._conn.cursor()
        cur.executescript(_SCHEMA_SQL)
        row = cur.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            cur.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        self._conn.commit()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Cursor]:
        assert self._conn is not None
        cur = self._conn.cursor()
        try:
            yield cur
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, result: TradeResult) -> str:
        trade_id = uuid.uuid4().hex
        legs_json = json.dumps([_leg_to_dict(leg) for leg in result.legs])
        with self._tx() as cur:
            cur.execute(
                f"INSERT INTO trades (trade_id, {_COLUMNS}, created_at) VALUES ({_PLACEHOLDERS})",
                (
                    trade_id,
                    result.group_id,
                    result.direction.value,
                    result.requested_size,
                    result.filled_size,
                    result.vwap,
                    result.fee_paid,
                    result.slippage,
                    result.slippage_cost,
                    result.latency_ms,
                    result.adverse_move,
                    result.net_pnl,
                    result.notional,
                    result.expected_sum,
                    result.executed_at.isoformat(),
                    result.observed_at.isoformat(),
                    legs_json,
                    1 if result.success else 0,
                    result.error,
                    time.time(),
                ),
            )
        LOGGER.debug("stored trade %s for %s", trade_id, result.group_id)
        return trade_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def count(self, group_id: str | None = None) -> int:
        assert self._conn is not None
        if group_id is None:
            row = self._conn.execute("SELECT COUNT(*) FROM trades").fetchone()
        else:
            row = self._conn.execute("SELECT COUNT(*) FROM trades WHERE group_id = ?", (group_id,)).fetchone()
        return int(row[0])

    def load_all(self) -> list[TradeResult]:
        assert self._conn is not None
        rows = self._conn.execute(f"SELECT {_COLUMNS} FROM trades ORDER BY seq").fetchall()
        return [_row_to_result(row) for row in rows]

    def edge_statistics(self, group_id: str) -> EdgeStats:
        assert self._conn is not None
        rows = self._conn.execute(
            "SELECT net_pnl, success FROM trades WHERE group_id = ? AND success = 1",
            (group_id,),
        ).fetchall()
        if not rows:
            return EdgeStats(group_id=group_id, samples=0, mean_pnl=0.0, pnl_std=0.0, win_rate=0.0)
        pnl = np.asarray([row[0] for row in rows], dtype=float)
        return EdgeStats(
            group_id=group_id,
            samples=int(pnl.size),
            mean_pnl=float(pnl.mean()),
            pnl_std=float(pnl.std()),
            win_rate=float((pnl > 0).mean()),
        )


def _leg_to_dict(leg: LegFill) -> dict:
    return {
        "outcome_id": leg.outcome_id,
        "side": leg.side.value,
        "weight": leg.weight,
        "quantity": leg.quantity,
        "book_vwap": leg.book_vwap,
        "execution_price": leg.execution_price,
        "signal_price": leg.signal_price,
        "midpoint": leg.midpoint,
    }


def _row_to_result(row: tuple) -> TradeResult:
    legs = tuple(
        LegFill(
            outcome_id=item["outcome_id"],
            side=Side(item["side"]),
            weight=item["weight"],
            quantity=item["quantity"],
            book_vwap=item["book_vwap"],
            execution_price=item["execution_price"],
            signal_price=item["signal_price"],
            midpoint=item["midpoint"],
        )
        for item in json.loads(row[15])
    )
    return TradeResult(
        group_id=row[0],
        direction=Side(row[1]),
        requested_size=row[2],
        filled_size=row[3],
        vwap=row[4],
        fee_paid=row[5],
        slippage=row[6],
        slippage_cost=row[7],
        latency_ms=row[8],
        adverse_move=row[9],
        net_pnl=row[10],
        notional=row[11],
        expected_sum=row[12],
        executed_at=datetime.fromisoformat(row[13]),
        observed_at=datetime.fromisoformat(row[14]),
        legs=legs,
        success=bool(row[16]),
        error=row[17],
    )
