"""SQLite storage for market data series and backtest results."""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Generator, Iterable

from .models import Record

if TYPE_CHECKING:
    from stock_backtest.engine.ledger import Order


def get_default_db_path() -> Path:
    """Get default database path."""
    return Path("data/market.db")


class MarketDataDatabase:
    """
    SQLite database for cached price series and backtest orders.

    Series records are keyed by (asset, timestamp), so re-inserting a
    timestamp overwrites the earlier row.

    Example:
        db = MarketDataDatabase()
        db.initialize()

        db.upsert_records("AAPL", records, last_updated=time.time())
        records = db.load_records("AAPL")
    """

    SCHEMA = """
    -- Price records, one row per asset and timestamp
    CREATE TABLE IF NOT EXISTS series_records (
        asset TEXT NOT NULL,
        timestamp REAL NOT NULL,    -- epoch seconds
        open REAL NOT NULL,
        high REAL NOT NULL,
        low REAL NOT NULL,
        close REAL NOT NULL,
        volume REAL NOT NULL,
        extra TEXT,                 -- JSON array of extra fields
        PRIMARY KEY (asset, timestamp)
    );

    -- Freshness watermark per asset
    CREATE TABLE IF NOT EXISTS series_meta (
        asset TEXT PRIMARY KEY,
        last_updated REAL,          -- epoch seconds of last upstream sync
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    );

    -- Resolved and unresolved orders from backtest runs
    CREATE TABLE IF NOT EXISTS backtest_orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        order_id TEXT NOT NULL,
        asset TEXT NOT NULL,
        side TEXT NOT NULL,         -- buy, sell
        quantity REAL NOT NULL,
        limit_price REAL,
        requested_at INTEGER NOT NULL,
        resolved_at INTEGER,
        status TEXT NOT NULL,       -- pending, filled, cancelled, rejected
        fill_price REAL,
        reason TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_backtest_orders_run ON backtest_orders(run_id);
    CREATE INDEX IF NOT EXISTS idx_backtest_orders_asset ON backtest_orders(asset);
    """

    def __init__(self, db_path: Path | str | None = None):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path) if db_path else get_default_db_path()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get database connection as context manager."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create database tables if they don't exist."""
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)

    # -- Series Storage --

    def upsert_records(
        self,
        asset: str,
        records: Iterable[Record],
        last_updated: float | None = None,
    ) -> int:
        """
        Insert or overwrite records for an asset.

        Args:
            asset: Asset identifier
            records: Records to write
            last_updated: New freshness watermark (left unchanged if None)

        Returns:
            Number of rows written
        """
        with self._get_connection() as conn:
            return self._write_records(conn, asset, records, last_updated)

    def replace_records(
        self,
        asset: str,
        records: Iterable[Record],
        last_updated: float | None = None,
    ) -> int:
        """
        Delete all stored records for an asset, then write the given ones.

        Both happen in one transaction, so a failed write keeps the old rows.
        """
        with self._get_connection() as conn:
            conn.execute("DELETE FROM series_records WHERE asset = ?", (asset,))
            return self._write_records(conn, asset, records, last_updated)

    def _write_records(
        self,
        conn: sqlite3.Connection,
        asset: str,
        records: Iterable[Record],
        last_updated: float | None,
    ) -> int:
        rows = [
            (
                asset,
                r.timestamp,
                r.open,
                r.high,
                r.low,
                r.close,
                r.volume,
                json.dumps(list(r.extra)) if r.extra else None,
            )
            for r in records
        ]

        conn.executemany(
            """
            INSERT OR REPLACE INTO series_records (
                asset, timestamp, open, high, low, close, volume, extra
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )
        if last_updated is not None:
            conn.execute(
                """
                INSERT INTO series_meta (asset, last_updated) VALUES (?, ?)
                ON CONFLICT(asset) DO UPDATE SET
                    last_updated = excluded.last_updated,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (asset, last_updated),
            )
        return len(rows)

    def load_records(self, asset: str) -> list[Record]:
        """Load all records for an asset ordered by timestamp."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT timestamp, open, high, low, close, volume, extra
                FROM series_records
                WHERE asset = ?
                ORDER BY timestamp
                """,
                (asset,),
            ).fetchall()

        return [
            Record(
                timestamp=row["timestamp"],
                open=row["open"],
                high=row["high"],
                low=row["low"],
                close=row["close"],
                volume=row["volume"],
                extra=tuple(json.loads(row["extra"])) if row["extra"] else (),
            )
            for row in rows
        ]

    def get_last_updated(self, asset: str) -> float | None:
        """Get the freshness watermark for an asset."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT last_updated FROM series_meta WHERE asset = ?",
                (asset,),
            ).fetchone()
        return row["last_updated"] if row else None

    def has_asset(self, asset: str) -> bool:
        """Check whether any data or watermark exists for an asset."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM series_meta WHERE asset = ?
                UNION
                SELECT 1 FROM series_records WHERE asset = ?
                LIMIT 1
                """,
                (asset, asset),
            ).fetchone()
        return row is not None

    def list_assets(self) -> list[str]:
        """List all assets with stored records."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT asset FROM series_records ORDER BY asset"
            ).fetchall()
        return [row["asset"] for row in rows]

    def delete_asset(self, asset: str) -> None:
        """Remove all records and metadata for an asset."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM series_records WHERE asset = ?", (asset,))
            conn.execute("DELETE FROM series_meta WHERE asset = ?", (asset,))

    # -- Backtest Results --

    def insert_orders(self, run_id: str, orders: Iterable["Order"]) -> int:
        """
        Persist orders from a backtest run.

        Args:
            run_id: Identifier of the backtest run
            orders: Orders in any status

        Returns:
            Number of rows inserted
        """
        rows = [
            (
                run_id,
                o.order_id,
                o.asset,
                o.side.value,
                o.quantity,
                o.limit_price,
                o.requested_at,
                o.resolved_at,
                o.status.value,
                o.fill_price,
                o.reason,
            )
            for o in orders
        ]

        with self._get_connection() as conn:
            conn.executemany(
                """
                INSERT INTO backtest_orders (
                    run_id, order_id, asset, side, quantity, limit_price,
                    requested_at, resolved_at, status, fill_price, reason
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def get_run_orders(self, run_id: str) -> list[dict[str, Any]]:
        """Get all orders stored for a run."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM backtest_orders WHERE run_id = ? ORDER BY id",
                (run_id,),
            ).fetchall()
            return [dict(row) for row in rows]

    def get_run_summary(self, run_id: str) -> dict[str, Any]:
        """
        Get order statistics for a backtest run.

        Args:
            run_id: Identifier of the backtest run

        Returns:
            Dict with order counts and traded notional
        """
        query = """
            SELECT
                COUNT(*) as total_orders,
                SUM(CASE WHEN status = 'filled' THEN 1 ELSE 0 END) as filled,
                SUM(CASE WHEN status = 'rejected' THEN 1 ELSE 0 END) as rejected,
                SUM(CASE WHEN status = 'cancelled' THEN 1 ELSE 0 END) as cancelled,
                SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) as pending,
                SUM(CASE WHEN status = 'filled' THEN quantity * fill_price ELSE 0 END)
                    as traded_notional
            FROM backtest_orders
            WHERE run_id = ?
        """

        with self._get_connection() as conn:
            row = conn.execute(query, (run_id,)).fetchone()

        if not row or row["total_orders"] == 0:
            return {
                "total_orders": 0,
                "filled": 0,
                "rejected": 0,
                "cancelled": 0,
                "pending": 0,
                "fill_rate": 0.0,
                "traded_notional": 0.0,
            }

        total = row["total_orders"]
        filled = row["filled"] or 0

        return {
            "total_orders": total,
            "filled": filled,
            "rejected": row["rejected"] or 0,
            "cancelled": row["cancelled"] or 0,
            "pending": row["pending"] or 0,
            "fill_rate": filled / total if total > 0 else 0.0,
            "traded_notional": row["traded_notional"] or 0.0,
        }
