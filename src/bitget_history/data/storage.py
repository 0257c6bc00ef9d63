"""
SQLite persistence for trades and depth records.

One database file per group:

    trades_<pair>_<code>.db   table ``trades``   (PK trade_id)
    depth_<pair>.db           tables ``depth_1`` / ``depth_2`` (PK timestamp)

All files use WAL journaling. Inserts are ``INSERT OR IGNORE`` so loading
the same archive twice never duplicates a row.

Usage (from the reconciliation job)::

    with HistoryDatabase(work_path, DataKind.TRADES, logger=logger) as db:
        inserted, skipped = db.insert_trades(records)
        db.checkpoint()
"""

from __future__ import annotations

import logging
import re
import sqlite3
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

from bitget_history.core.errors import ConfigurationError
from bitget_history.core.models import DataKind, DepthRecord, TradeRecord

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_TRADES_DDL = """
CREATE TABLE IF NOT EXISTS trades (
    trade_id TEXT PRIMARY KEY,
    timestamp INTEGER NOT NULL,
    price REAL NOT NULL,
    side TEXT NOT NULL,
    volume_quote REAL NOT NULL,
    size_base REAL NOT NULL
)
"""

_DEPTH_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    timestamp INTEGER PRIMARY KEY,
    ask_price REAL NOT NULL,
    bid_price REAL NOT NULL,
    ask_volume REAL NOT NULL,
    bid_volume REAL NOT NULL
)
"""


def trades_db_name(pair: str, code: str) -> str:
    return f"trades_{pair}_{code}.db"


def depth_db_name(pair: str) -> str:
    return f"depth_{pair}.db"


def depth_table(code: str) -> str:
    table = f"depth_{code}"
    if not _TABLE_RE.match(table):
        raise ConfigurationError(f"invalid depth market code {code!r}")
    return table


class HistoryDatabase:
    """
    Thin wrapper around one SQLite connection.

    Parameters
    ----------
    path : str | Path
        Database file; parent directories are created.
    kind : DataKind
        Decides which schema is created.
    depth_codes : sequence of str
        Depth market codes whose tables should exist (ignored for trades).
    """

    def __init__(
        self,
        path: Union[str, Path],
        kind: Union[DataKind, str],
        depth_codes: Sequence[str] = ("1", "2"),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.path = Path(path)
        self.kind = DataKind(kind)
        self.depth_codes = list(depth_codes)
        self.logger = logger or logging.getLogger(__name__)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.logger.debug(f"Opening database: {self.path} for {self.kind.value}")
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(str(self.path))
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_schema()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _create_schema(self) -> None:
        with self.conn:
            if self.kind == DataKind.TRADES:
                self.conn.execute(_TRADES_DDL)
                self.conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_timestamp ON trades(timestamp)")
            else:
                for code in self.depth_codes:
                    self.conn.execute(_DEPTH_DDL.format(table=depth_table(code)))

    def reset_depth_tables(self, codes: Iterable[str]) -> None:
        """Drop and recreate the depth tables for *codes*."""
        if self.kind != DataKind.DEPTH:
            raise ConfigurationError("reset_depth_tables is only valid for depth databases")
        with self.conn:
            for code in codes:
                table = depth_table(code)
                self.conn.execute(f"DROP TABLE IF EXISTS {table}")
                self.conn.execute(_DEPTH_DDL.format(table=table))
                self.logger.debug(f"Recreated table {table} in {self.path}")

    # ------------------------------------------------------------------
    # Inserts
    # ------------------------------------------------------------------

    def insert_trades(self, records: Sequence[TradeRecord]) -> tuple[int, int]:
        """Insert in one transaction. Returns (inserted, ignored_duplicates)."""
        rows = [
            (r.trade_id, r.timestamp, r.price, r.side, r.volume_quote, r.size_base)
            for r in records
        ]
        with self.conn:
            before = self.conn.total_changes
            self.conn.executemany(
                "INSERT OR IGNORE INTO trades "
                "(trade_id, timestamp, price, side, volume_quote, size_base) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                rows,
            )
            inserted = self.conn.total_changes - before
        return inserted, len(rows) - inserted

    def insert_depth(self, code: str, records: Sequence[DepthRecord]) -> tuple[int, int]:
        """Insert into ``depth_<code>`` in one transaction. Returns (inserted, ignored_duplicates)."""
        table = depth_table(code)
        rows = [
            (r.timestamp, r.ask_price, r.bid_price, r.ask_volume, r.bid_volume)
            for r in records
        ]
        with self.conn:
            before = self.conn.total_changes
            self.conn.executemany(
                f"INSERT OR IGNORE INTO {table} "
                "(timestamp, ask_price, bid_price, ask_volume, bid_volume) "
                "VALUES (?, ?, ?, ?, ?)",
                rows,
            )
            inserted = self.conn.total_changes - before
        return inserted, len(rows) - inserted

    def count(self, table: str) -> int:
        if not _TABLE_RE.match(table):
            raise ConfigurationError(f"invalid table name {table!r}")
        return self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError(f"database {self.path} is closed")
        return self._conn

    def checkpoint(self, mode: str = "TRUNCATE") -> None:
        if mode not in ("PASSIVE", "FULL", "RESTART", "TRUNCATE"):
            raise ValueError(f"unknown checkpoint mode {mode}")
        self.conn.execute(f"PRAGMA wal_checkpoint({mode})")

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self.checkpoint("TRUNCATE")
        except sqlite3.Error as exc:
            self.logger.warning(f"Failed to perform WAL checkpoint for {self.path}: {exc}")
        finally:
            self._conn.close()
            self._conn = None
        self.logger.debug(f"Database {self.path} closed")

    def __enter__(self) -> "HistoryDatabase":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
