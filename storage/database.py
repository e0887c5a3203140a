"""
SQLite Storage Layer.
Handles persistence for cached candles, cache record metadata, and backtest results.
All monetary values stored as TEXT to preserve Decimal precision.
"""

from __future__ import annotations
import sqlite3
import json
from decimal import Decimal
from typing import List, Optional, Dict, Any, Iterable
from exchange.models import (
    Candle, CacheStatus, BacktestResult, BacktestStatus, Trade, EquityPoint,
)
from storage.candle_store import CandleStore
import logging

logger = logging.getLogger(__name__)


class Database:
    """SQLite database manager with typed accessors."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self):
        """Initialize database connection and create tables."""
        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        logger.info(f"[DB] Connected to {self.db_path}")

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        assert self._conn is not None, "Database not connected"
        return self._conn

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS candles (
                symbol TEXT NOT NULL,
                interval TEXT NOT NULL,
                open_time INTEGER NOT NULL,
                open TEXT NOT NULL,
                high TEXT NOT NULL,
                low TEXT NOT NULL,
                close TEXT NOT NULL,
                volume TEXT NOT NULL,
                close_time INTEGER NOT NULL,
                PRIMARY KEY (symbol, interval, open_time)
            );

            CREATE TABLE IF NOT EXISTS cache_records (
                symbol TEXT NOT NULL,
                interval TEXT NOT NULL,
                data_start_time INTEGER,
                data_end_time INTEGER,
                candle_count INTEGER NOT NULL DEFAULT 0,
                last_update_time INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'ACTIVE',
                error_message TEXT,
                PRIMARY KEY (symbol, interval)
            );

            CREATE TABLE IF NOT EXISTS backtests (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                symbol TEXT NOT NULL,
                interval TEXT NOT NULL,
                start_time INTEGER NOT NULL,
                end_time INTEGER NOT NULL,
                initial_balance TEXT NOT NULL,
                final_balance TEXT,
                status TEXT NOT NULL DEFAULT 'RUNNING',
                error TEXT,
                summary TEXT,
                trades TEXT,
                equity_curve TEXT,
                created_at TEXT,
                completed_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_cache_updated ON cache_records(last_update_time);
            CREATE INDEX IF NOT EXISTS idx_backtests_created ON backtests(created_at);
        """)
        self.conn.commit()

    # ==================== Candle Operations ====================

    def save_candles(self, symbol: str, interval: str, candles: Iterable[Candle]) -> int:
        """Upsert candles keyed by open_time."""
        rows = [
            (
                symbol, interval, c.open_time,
                str(c.open), str(c.high), str(c.low), str(c.close), str(c.volume),
                c.close_time,
            )
            for c in candles
        ]
        if not rows:
            return 0
        self.conn.executemany(
            """INSERT OR REPLACE INTO candles
               (symbol, interval, open_time, open, high, low, close, volume, close_time)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            rows,
        )
        self.conn.commit()
        return len(rows)

    def load_candles(self, symbol: str, interval: str) -> List[Candle]:
        rows = self.conn.execute(
            "SELECT * FROM candles WHERE symbol = ? AND interval = ? ORDER BY open_time",
            (symbol, interval),
        ).fetchall()
        return [self._row_to_candle(r) for r in rows]

    def delete_candles_before(self, symbol: str, interval: str, cutoff: int) -> int:
        cursor = self.conn.execute(
            "DELETE FROM candles WHERE symbol = ? AND interval = ? AND close_time < ?",
            (symbol, interval, cutoff),
        )
        self.conn.commit()
        return cursor.rowcount

    # ==================== Cache Record Operations ====================

    def save_cache_record(self, store: CandleStore):
        self.conn.execute(
            """INSERT OR REPLACE INTO cache_records
               (symbol, interval, data_start_time, data_end_time, candle_count,
                last_update_time, status, error_message)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                store.symbol, store.interval, store.data_start_time, store.data_end_time,
                store.candle_count, store.last_update_time, store.status.value,
                store.error_message,
            ),
        )
        self.conn.commit()

    def load_cache_record(self, symbol: str, interval: str) -> Optional[CandleStore]:
        """Rebuild a CandleStore (metadata + candles) from disk."""
        row = self.conn.execute(
            "SELECT * FROM cache_records WHERE symbol = ? AND interval = ?",
            (symbol, interval),
        ).fetchone()
        if not row:
            return None

        status = CacheStatus(row["status"])
        error_message = row["error_message"]
        if status == CacheStatus.UPDATING:
            # a fetch was in flight when the process stopped
            logger.warning(f"[DB] {symbol} {interval}: update was interrupted, marking as error")
            status, error_message = CacheStatus.ERROR, "interrupted"

        store = CandleStore(
            symbol=row["symbol"],
            interval=row["interval"],
            status=status,
            error_message=error_message,
        )
        candles = self.load_candles(symbol, interval)
        if candles:
            store.merge(candles)
        # merge() touches the timestamp; restore the persisted one
        store.last_update_time = row["last_update_time"]
        return store

    def list_cache_records(self) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT symbol, interval, status FROM cache_records ORDER BY last_update_time DESC"
        ).fetchall()
        return [dict(r) for r in rows]

    def delete_cache_records(self, symbol: Optional[str] = None, interval: Optional[str] = None) -> int:
        """Delete cache records (and their candles) matching the filter. Returns records removed."""
        clauses, params = [], []
        if symbol:
            clauses.append("symbol = ?")
            params.append(symbol)
        if interval:
            clauses.append("interval = ?")
            params.append(interval)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        self.conn.execute(f"DELETE FROM candles{where}", params)
        cursor = self.conn.execute(f"DELETE FROM cache_records{where}", params)
        self.conn.commit()
        return cursor.rowcount

    # ==================== Backtest Operations ====================

    def save_backtest(self, result: BacktestResult):
        self.conn.execute(
            """INSERT OR REPLACE INTO backtests
               (id, name, symbol, interval, start_time, end_time, initial_balance,
                final_balance, status, error, summary, trades, equity_curve,
                created_at, completed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                result.id, result.name, result.symbol, result.interval,
                result.start_time, result.end_time, str(result.initial_balance),
                str(result.final_balance) if result.final_balance is not None else None,
                result.status.value, result.error,
                json.dumps(result.summary, default=str),
                json.dumps([t.to_dict() for t in result.trades]),
                json.dumps([p.to_dict() for p in result.equity_curve]),
                result.created_at, result.completed_at,
            ),
        )
        self.conn.commit()

    def get_backtest(self, backtest_id: str) -> Optional[BacktestResult]:
        row = self.conn.execute("SELECT * FROM backtests WHERE id = ?", (backtest_id,)).fetchone()
        return self._row_to_backtest(row) if row else None

    def list_backtests(self) -> List[BacktestResult]:
        rows = self.conn.execute("SELECT * FROM backtests ORDER BY created_at DESC").fetchall()
        return [self._row_to_backtest(r) for r in rows]

    def delete_backtest(self, backtest_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM backtests WHERE id = ?", (backtest_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    # ==================== Row Converters ====================

    def _row_to_candle(self, row) -> Candle:
        return Candle(
            open_time=row["open_time"],
            open=Decimal(row["open"]),
            high=Decimal(row["high"]),
            low=Decimal(row["low"]),
            close=Decimal(row["close"]),
            volume=Decimal(row["volume"]),
            close_time=row["close_time"],
        )

    def _row_to_backtest(self, row) -> BacktestResult:
        return BacktestResult(
            id=row["id"],
            name=row["name"],
            symbol=row["symbol"],
            interval=row["interval"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            initial_balance=Decimal(row["initial_balance"]),
            final_balance=Decimal(row["final_balance"]) if row["final_balance"] else None,
            trades=tuple(Trade.from_dict(t) for t in json.loads(row["trades"] or "[]")),
            equity_curve=tuple(
                EquityPoint.from_dict(p) for p in json.loads(row["equity_curve"] or "[]")
            ),
            summary=json.loads(row["summary"] or "{}"),
            status=BacktestStatus(row["status"]),
            error=row["error"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )
