"""Append-only rebalance history, in memory or persisted to SQLite.

Records are never updated or deleted. The index of a record is its
position in append order, starting at zero.
"""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List

from revaultron.models import RebalanceRecord

LOGGER = logging.getLogger(__name__)

DB_FILENAME = "rebalance_history.db"

SCHEMA_VERSION = 1

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS rebalance_records (
    record_index    INTEGER PRIMARY KEY,
    vault           TEXT NOT NULL,
    asset_sold      TEXT NOT NULL,
    asset_bought    TEXT NOT NULL,
    amount_sold     INTEGER NOT NULL,
    amount_bought   INTEGER NOT NULL,
    volatility_bps  INTEGER NOT NULL,
    timestamp       INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rebalance_records_vault ON rebalance_records(vault);
"""

_COLUMNS = "vault, asset_sold, asset_bought, amount_sold, amount_bought, volatility_bps, timestamp"


class RebalanceHistory(ABC):
    @abstractmethod
    def append(self, record: RebalanceRecord) -> int:
        """Append ``record`` and return its index."""
        raise NotImplementedError

    @abstractmethod
    def get(self, index: int) -> RebalanceRecord:
        raise NotImplementedError

    @abstractmethod
    def for_vault(self, vault: str) -> List[RebalanceRecord]:
        raise NotImplementedError

    @abstractmethod
    def count(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        return None


class InMemoryHistory(RebalanceHistory):
    def __init__(self) -> None:
        self._records: List[RebalanceRecord] = []

    def append(self, record: RebalanceRecord) -> int:
        self._records.append(record)
        return len(self._records) - 1

    def get(self, index: int) -> RebalanceRecord:
        if index < 0 or index >= len(self._records):
            raise IndexError(f"no rebalance record at index {index}")
        return self._records[index]

    def for_vault(self, vault: str) -> List[RebalanceRecord]:
        return [r for r in self._records if r.vault == vault]

    def count(self) -> int:
        return len(self._records)


class SqliteHistoryStore(RebalanceHistory):
    """SQLite-backed history that survives restarts."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        if db_path is None:
            db_path = Path("data") / DB_FILENAME
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._open()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _open(self) -> None:
        self._conn = sqlite3.connect(
            str(self._db_path),
            isolation_level="DEFERRED",
            check_same_thread=False,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._apply_schema()

    def _apply_schema(self) -> None:
        assert self._conn is not None
        cur = self._conn.cursor()
        cur.executescript(_SCHEMA_SQL)
        row = cur.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            cur.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        elif row[0] != SCHEMA_VERSION:
            raise RuntimeError(
                f"history database {self._db_path} has schema v{row[0]}, expected v{SCHEMA_VERSION}"
            )
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

    def append(self, record: RebalanceRecord) -> int:
        with self._tx() as cur:
            row = cur.execute("SELECT COUNT(*) FROM rebalance_records").fetchone()
            index = int(row[0])
            cur.execute(
                f"INSERT INTO rebalance_records (record_index, {_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    index,
                    record.vault,
                    record.asset_sold,
                    record.asset_bought,
                    record.amount_sold,
                    record.amount_bought,
                    record.volatility_bps,
                    record.timestamp,
                ),
            )
        LOGGER.debug("persisted rebalance record %d for vault %s", index, record.vault)
        return index

    def get(self, index: int) -> RebalanceRecord:
        assert self._conn is not None
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM rebalance_records WHERE record_index = ?",
            (index,),
        ).fetchone()
        if row is None:
            raise IndexError(f"no rebalance record at index {index}")
        return _row_to_record(row)

    def for_vault(self, vault: str) -> List[RebalanceRecord]:
        assert self._conn is not None
        rows = self._conn.execute(
            f"SELECT {_COLUMNS} FROM rebalance_records WHERE vault = ? ORDER BY record_index",
            (vault,),
        ).fetchall()
        return [_row_to_record(row) for row in rows]

    def count(self) -> int:
        assert self._conn is not None
        row = self._conn.execute("SELECT COUNT(*) FROM rebalance_records").fetchone()
        return int(row[0])


def _row_to_record(row: tuple) -> RebalanceRecord:
    return RebalanceRecord(
        vault=row[0],
        asset_sold=row[1],
        asset_bought=row[2],
        amount_sold=int(row[3]),
        amount_bought=int(row[4]),
        volatility_bps=int(row[5]),
        timestamp=int(row[6]),
    )
