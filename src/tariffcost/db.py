"""Database connection and schema management."""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "tariffcost" / "tariffcost.db"

# Timestamps are stored as fixed-width UTC strings so that text comparison
# in SQL is chronological.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

SCHEMA = """
-- Unit rates per tariff (half-hourly for Agile, sparse for fixed tariffs)
CREATE TABLE IF NOT EXISTS rate_intervals (
    id INTEGER PRIMARY KEY,
    tariff_code TEXT NOT NULL,
    valid_from TEXT NOT NULL,
    valid_to TEXT,
    value_excl_tax REAL NOT NULL,
    value_incl_tax REAL NOT NULL,
    UNIQUE(tariff_code, valid_from)
);

-- Daily standing charges per tariff
CREATE TABLE IF NOT EXISTS standing_charge_intervals (
    id INTEGER PRIMARY KEY,
    tariff_code TEXT NOT NULL,
    valid_from TEXT NOT NULL,
    valid_to TEXT,
    value_excl_tax REAL NOT NULL,
    value_incl_tax REAL NOT NULL,
    UNIQUE(tariff_code, valid_from)
);

-- Half-hourly meter consumption
CREATE TABLE IF NOT EXISTS consumption_intervals (
    id INTEGER PRIMARY KEY,
    interval_start TEXT NOT NULL UNIQUE,
    interval_end TEXT NOT NULL,
    consumption_kwh REAL NOT NULL
);

-- Derived cost calculations (persisted cache tier)
CREATE TABLE IF NOT EXISTS cost_calculations (
    id INTEGER PRIMARY KEY,
    tariff_code TEXT NOT NULL,
    interval_type TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    total_kwh REAL NOT NULL,
    cost_excl_tax REAL NOT NULL,
    cost_incl_tax REAL NOT NULL,
    standing_cost_excl_tax REAL NOT NULL,
    standing_cost_incl_tax REAL NOT NULL,
    avg_rate_excl_tax REAL NOT NULL,
    avg_rate_incl_tax REAL NOT NULL,
    source_kwh REAL NOT NULL DEFAULT 0,
    unpriced_kwh REAL NOT NULL DEFAULT 0,
    inputs_digest TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(tariff_code, interval_type, period_start, period_end)
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_rate_tariff ON rate_intervals(tariff_code, valid_from);
CREATE INDEX IF NOT EXISTS idx_standing_tariff ON standing_charge_intervals(tariff_code, valid_from);
CREATE INDEX IF NOT EXISTS idx_consumption_end ON consumption_intervals(interval_end);
"""


def to_db(dt: datetime | None) -> str | None:
    """Format a datetime for storage (naive values are taken as UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def from_db(value: str | None) -> datetime | None:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if value is None:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def get_db_path() -> Path:
    """Get the database path, creating parent directories if needed."""
    db_path = Path(DEFAULT_DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path


@contextmanager
def get_connection(db_path: Path | None = None) -> Iterator[sqlite3.Connection]:
    """Get a database connection with row factory enabled."""
    path = db_path or get_db_path()
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def migrate_db(db_path: Path | None = None) -> None:
    """Apply database migrations for existing databases."""
    with get_connection(db_path) as conn:
        tables = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='cost_calculations'"
        ).fetchone()

        if not tables:
            return

        cursor = conn.execute("PRAGMA table_info(cost_calculations)")
        existing_columns = {row["name"] for row in cursor.fetchall()}

        # Older databases predate the cache validation columns
        columns_to_add = {
            "source_kwh": "REAL NOT NULL DEFAULT 0",
            "unpriced_kwh": "REAL NOT NULL DEFAULT 0",
            "inputs_digest": "TEXT NOT NULL DEFAULT ''",
        }

        for col_name, col_type in columns_to_add.items():
            if col_name not in existing_columns:
                conn.execute(f"ALTER TABLE cost_calculations ADD COLUMN {col_name} {col_type}")

        conn.commit()


def init_db(db_path: Path | None = None) -> None:
    """Initialize the database schema."""
    with get_connection(db_path) as conn:
        conn.executescript(SCHEMA)
        conn.commit()

    migrate_db(db_path)


def get_stats(db_path: Path | None = None) -> dict:
    """Get database statistics."""
    with get_connection(db_path) as conn:
        stats = {}

        row = conn.execute(
            "SELECT COUNT(*) as count, MIN(interval_start) as earliest, MAX(interval_end) as latest FROM consumption_intervals"
        ).fetchone()
        stats["consumption"] = {
            "count": row["count"],
            "earliest": row["earliest"],
            "latest": row["latest"],
        }

        rows = conn.execute(
            """SELECT tariff_code, COUNT(*) as count, MIN(valid_from) as earliest, MAX(valid_to) as latest
               FROM rate_intervals GROUP BY tariff_code"""
        ).fetchall()
        stats["rates_by_tariff"] = {
            row["tariff_code"]: {
                "count": row["count"],
                "earliest": row["earliest"],
                "latest": row["latest"],
            }
            for row in rows
        }

        rows = conn.execute(
            "SELECT tariff_code, COUNT(*) as count FROM standing_charge_intervals GROUP BY tariff_code"
        ).fetchall()
        stats["standing_charges_by_tariff"] = {row["tariff_code"]: row["count"] for row in rows}

        row = conn.execute("SELECT COUNT(*) as count FROM cost_calculations").fetchone()
        stats["cost_calculations"] = {"count": row["count"]}

        return stats
