"""Typed access to the interval and calculation tables.

Every operation runs under one re-entrant lock per store, so a store
instance behaves like a serial work queue: concurrent callers wait for
each other instead of racing on upserts.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable

from .db import from_db, get_connection, init_db, to_db
from .models import (
    CalculationKey,
    ConsumptionInterval,
    CostCalculation,
    IntervalType,
    RateInterval,
    SeriesKind,
    StandingChargeInterval,
)

logger = logging.getLogger(__name__)

# table, start column, end column, scoped by tariff_code
_TABLES = {
    SeriesKind.RATES: ("rate_intervals", "valid_from", "valid_to", True),
    SeriesKind.STANDING_CHARGES: ("standing_charge_intervals", "valid_from", "valid_to", True),
    SeriesKind.CONSUMPTION: ("consumption_intervals", "interval_start", "interval_end", False),
}


@dataclass
class SeriesBounds:
    """Extent of one locally stored series."""

    count: int
    earliest_start: datetime | None
    latest_start: datetime | None
    latest_end: datetime | None
    open_ended: bool = False

    @property
    def is_empty(self) -> bool:
        return self.count == 0


class IntervalStore:
    """SQLite-backed store for rate, standing-charge, consumption and calculation rows."""

    def __init__(self, db_path: Path | None = None, initialize: bool = True):
        self.db_path = db_path
        self._lock = threading.RLock()
        if initialize:
            init_db(db_path)

    # Generic helpers

    def _where(self, kind: SeriesKind, tariff_code: str | None) -> tuple[str, list]:
        _, _, _, scoped = _TABLES[kind]
        if scoped:
            if tariff_code is None:
                raise ValueError(f"{kind.value} queries need a tariff_code")
            return "tariff_code = ?", [tariff_code]
        return "1 = 1", []

    def count(
        self,
        kind: SeriesKind,
        tariff_code: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        """Count rows whose start lies in [start, end)."""
        table, start_col, _, _ = _TABLES[kind]
        clause, params = self._where(kind, tariff_code)
        if start is not None:
            clause += f" AND {start_col} >= ?"
            params.append(to_db(start))
        if end is not None:
            clause += f" AND {start_col} < ?"
            params.append(to_db(end))

        with self._lock, get_connection(self.db_path) as conn:
            row = conn.execute(f"SELECT COUNT(*) as count FROM {table} WHERE {clause}", params).fetchone()
            return row["count"]

    def bounds(self, kind: SeriesKind, tariff_code: str | None = None) -> SeriesBounds:
        """Earliest/latest timestamps and row count of a series."""
        table, start_col, end_col, _ = _TABLES[kind]
        clause, params = self._where(kind, tariff_code)

        with self._lock, get_connection(self.db_path) as conn:
            row = conn.execute(
                f"""SELECT COUNT(*) as count,
                           MIN({start_col}) as earliest_start,
                           MAX({start_col}) as latest_start,
                           MAX({end_col}) as latest_end,
                           SUM(CASE WHEN {end_col} IS NULL THEN 1 ELSE 0 END) as open_count
                    FROM {table} WHERE {clause}""",
                params,
            ).fetchone()

        return SeriesBounds(
            count=row["count"],
            earliest_start=from_db(row["earliest_start"]),
            latest_start=from_db(row["latest_start"]),
            latest_end=from_db(row["latest_end"]),
            open_ended=bool(row["open_count"]),
        )

    def list_starts(
        self,
        kind: SeriesKind,
        tariff_code: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[datetime]:
        """Natural-key start instants of a series, ascending, within [start, end]."""
        table, start_col, _, _ = _TABLES[kind]
        clause, params = self._where(kind, tariff_code)
        if start is not None:
            clause += f" AND {start_col} >= ?"
            params.append(to_db(start))
        if end is not None:
            clause += f" AND {start_col} <= ?"
            params.append(to_db(end))

        with self._lock, get_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT {start_col} as start FROM {table} WHERE {clause} ORDER BY {start_col}",
                params,
            ).fetchall()
        return [from_db(row["start"]) for row in rows]

    def delete_all(self, kind: SeriesKind, tariff_code: str | None = None) -> int:
        """Batch delete a series (optionally one tariff). Returns rows deleted."""
        table, _, _, scoped = _TABLES[kind]
        with self._lock, get_connection(self.db_path) as conn:
            if scoped and tariff_code is not None:
                cursor = conn.execute(f"DELETE FROM {table} WHERE tariff_code = ?", (tariff_code,))
            else:
                cursor = conn.execute(f"DELETE FROM {table}")
            conn.commit()
            return cursor.rowcount

    def _existing_keys(
        self, conn: sqlite3.Connection, kind: SeriesKind, tariff_code: str | None, starts: list[str]
    ) -> set[str]:
        table, start_col, _, scoped = _TABLES[kind]
        existing: set[str] = set()
        # SQLite caps bound parameters, so look keys up in chunks
        for i in range(0, len(starts), 500):
            chunk = starts[i : i + 500]
            placeholders = ",".join("?" for _ in chunk)
            if scoped:
                rows = conn.execute(
                    f"SELECT {start_col} as start FROM {table} WHERE tariff_code = ? AND {start_col} IN ({placeholders})",
                    [tariff_code, *chunk],
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {start_col} as start FROM {table} WHERE {start_col} IN ({placeholders})",
                    chunk,
                ).fetchall()
            existing.update(row["start"] for row in rows)
        return existing

    # Upserts (one commit per call)

    def _upsert_tariff_rows(
        self,
        kind: SeriesKind,
        records: list[RateInterval] | list[StandingChargeInterval],
    ) -> dict:
        table = _TABLES[kind][0]
        inserted = 0
        updated = 0

        with self._lock, get_connection(self.db_path) as conn:
            by_tariff: dict[str, list] = {}
            for record in records:
                by_tariff.setdefault(record.tariff_code, []).append(record)

            for tariff_code, rows in by_tariff.items():
                existing = self._existing_keys(conn, kind, tariff_code, [to_db(r.valid_from) for r in rows])
                for record in rows:
                    if to_db(record.valid_from) in existing:
                        updated += 1
                    else:
                        inserted += 1

                conn.executemany(
                    f"""INSERT INTO {table}
                        (tariff_code, valid_from, valid_to, value_excl_tax, value_incl_tax)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(tariff_code, valid_from) DO UPDATE SET
                            valid_to = excluded.valid_to,
                            value_excl_tax = excluded.value_excl_tax,
                            value_incl_tax = excluded.value_incl_tax""",
                    [
                        (
                            r.tariff_code,
                            to_db(r.valid_from),
                            to_db(r.valid_to),
                            r.value_excl_tax,
                            r.value_incl_tax,
                        )
                        for r in rows
                    ],
                )
            conn.commit()

        return {"inserted": inserted, "updated": updated}

    def upsert_rates(self, records: Iterable[RateInterval]) -> dict:
        """Insert or update rates by (tariff_code, valid_from).

        Returns dict with 'inserted' and 'updated' counts.
        """
        return self._upsert_tariff_rows(SeriesKind.RATES, list(records))

    def upsert_standing_charges(self, records: Iterable[StandingChargeInterval]) -> dict:
        """Insert or update standing charges by (tariff_code, valid_from)."""
        return self._upsert_tariff_rows(SeriesKind.STANDING_CHARGES, list(records))

    def upsert_consumption(self, records: Iterable[ConsumptionInterval]) -> dict:
        """Insert or update consumption by interval_start."""
        records = list(records)
        inserted = 0
        updated = 0

        with self._lock, get_connection(self.db_path) as conn:
            existing = self._existing_keys(
                conn, SeriesKind.CONSUMPTION, None, [to_db(r.interval_start) for r in records]
            )
            for record in records:
                if to_db(record.interval_start) in existing:
                    updated += 1
                else:
                    inserted += 1

            conn.executemany(
                """INSERT INTO consumption_intervals
                   (interval_start, interval_end, consumption_kwh)
                   VALUES (?, ?, ?)
                   ON CONFLICT(interval_start) DO UPDATE SET
                       interval_end = excluded.interval_end,
                       consumption_kwh = excluded.consumption_kwh""",
                [(to_db(r.interval_start), to_db(r.interval_end), r.consumption_kwh) for r in records],
            )
            conn.commit()

        return {"inserted": inserted, "updated": updated}

    def upsert(self, kind: SeriesKind, records: list) -> dict:
        """Dispatch an upsert to the table for kind."""
        if kind is SeriesKind.RATES:
            return self.upsert_rates(records)
        if kind is SeriesKind.STANDING_CHARGES:
            return self.upsert_standing_charges(records)
        return self.upsert_consumption(records)

    # Typed queries

    def _query_tariff_rows(
        self, kind: SeriesKind, tariff_code: str, start: datetime | None, end: datetime | None
    ) -> list[sqlite3.Row]:
        table = _TABLES[kind][0]
        clause = "tariff_code = ?"
        params: list = [tariff_code]
        if end is not None:
            clause += " AND valid_from < ?"
            params.append(to_db(end))
        if start is not None:
            clause += " AND (valid_to IS NULL OR valid_to > ?)"
            params.append(to_db(start))

        with self._lock, get_connection(self.db_path) as conn:
            return conn.execute(
                f"""SELECT tariff_code, valid_from, valid_to, value_excl_tax, value_incl_tax
                    FROM {table} WHERE {clause} ORDER BY valid_from""",
                params,
            ).fetchall()

    def query_rates(
        self, tariff_code: str, start: datetime | None = None, end: datetime | None = None
    ) -> list[RateInterval]:
        """Rates of a tariff overlapping [start, end), ordered by valid_from."""
        return [
            RateInterval(
                tariff_code=row["tariff_code"],
                valid_from=from_db(row["valid_from"]),
                valid_to=from_db(row["valid_to"]),
                value_excl_tax=row["value_excl_tax"],
                value_incl_tax=row["value_incl_tax"],
            )
            for row in self._query_tariff_rows(SeriesKind.RATES, tariff_code, start, end)
        ]

    def query_standing_charges(
        self, tariff_code: str, start: datetime | None = None, end: datetime | None = None
    ) -> list[StandingChargeInterval]:
        """Standing charges of a tariff overlapping [start, end), ordered by valid_from."""
        return [
            StandingChargeInterval(
                tariff_code=row["tariff_code"],
                valid_from=from_db(row["valid_from"]),
                valid_to=from_db(row["valid_to"]),
                value_excl_tax=row["value_excl_tax"],
                value_incl_tax=row["value_incl_tax"],
            )
            for row in self._query_tariff_rows(SeriesKind.STANDING_CHARGES, tariff_code, start, end)
        ]

    def query_consumption(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> list[ConsumptionInterval]:
        """Consumption slots with interval_start in [start, end), ascending."""
        clause = "1 = 1"
        params: list = []
        if start is not None:
            clause += " AND interval_start >= ?"
            params.append(to_db(start))
        if end is not None:
            clause += " AND interval_start < ?"
            params.append(to_db(end))

        with self._lock, get_connection(self.db_path) as conn:
            rows = conn.execute(
                f"""SELECT interval_start, interval_end, consumption_kwh
                    FROM consumption_intervals WHERE {clause} ORDER BY interval_start""",
                params,
            ).fetchall()

        return [
            ConsumptionInterval(
                interval_start=from_db(row["interval_start"]),
                interval_end=from_db(row["interval_end"]),
                consumption_kwh=row["consumption_kwh"],
            )
            for row in rows
        ]

    def sum_consumption(self, start: datetime, end: datetime) -> float:
        """Total kWh of slots with interval_start in [start, end)."""
        with self._lock, get_connection(self.db_path) as conn:
            row = conn.execute(
                """SELECT COALESCE(SUM(consumption_kwh), 0) as total
                   FROM consumption_intervals
                   WHERE interval_start >= ? AND interval_start < ?""",
                (to_db(start), to_db(end)),
            ).fetchone()
            return row["total"]

    # Calculations

    @staticmethod
    def _calculation_from_row(row: sqlite3.Row) -> CostCalculation:
        return CostCalculation(
            tariff_code=row["tariff_code"],
            interval_type=IntervalType(row["interval_type"]),
            period_start=from_db(row["period_start"]),
            period_end=from_db(row["period_end"]),
            total_kwh=row["total_kwh"],
            cost_excl_tax=row["cost_excl_tax"],
            cost_incl_tax=row["cost_incl_tax"],
            standing_cost_excl_tax=row["standing_cost_excl_tax"],
            standing_cost_incl_tax=row["standing_cost_incl_tax"],
            avg_rate_excl_tax=row["avg_rate_excl_tax"],
            avg_rate_incl_tax=row["avg_rate_incl_tax"],
            source_kwh=row["source_kwh"],
            unpriced_kwh=row["unpriced_kwh"],
            inputs_digest=row["inputs_digest"],
            created_at=from_db(row["created_at"]),
            updated_at=from_db(row["updated_at"]),
        )

    def get_calculation(self, key: CalculationKey) -> CostCalculation | None:
        """Stored calculation matching key exactly, if any."""
        with self._lock, get_connection(self.db_path) as conn:
            row = conn.execute(
                """SELECT * FROM cost_calculations
                   WHERE tariff_code = ? AND interval_type = ? AND period_start = ? AND period_end = ?""",
                (key.tariff_code, key.interval_type.value, to_db(key.period_start), to_db(key.period_end)),
            ).fetchone()
        return self._calculation_from_row(row) if row else None

    def save_calculation(self, calculation: CostCalculation) -> CostCalculation:
        """Insert or overwrite a calculation, keeping the original created_at.

        Returns the calculation as stored.
        """
        with self._lock, get_connection(self.db_path) as conn:
            conn.execute(
                """INSERT INTO cost_calculations
                   (tariff_code, interval_type, period_start, period_end, total_kwh,
                    cost_excl_tax, cost_incl_tax, standing_cost_excl_tax, standing_cost_incl_tax,
                    avg_rate_excl_tax, avg_rate_incl_tax, source_kwh, unpriced_kwh, inputs_digest,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(tariff_code, interval_type, period_start, period_end) DO UPDATE SET
                       total_kwh = excluded.total_kwh,
                       cost_excl_tax = excluded.cost_excl_tax,
                       cost_incl_tax = excluded.cost_incl_tax,
                       standing_cost_excl_tax = excluded.standing_cost_excl_tax,
                       standing_cost_incl_tax = excluded.standing_cost_incl_tax,
                       avg_rate_excl_tax = excluded.avg_rate_excl_tax,
                       avg_rate_incl_tax = excluded.avg_rate_incl_tax,
                       source_kwh = excluded.source_kwh,
                       unpriced_kwh = excluded.unpriced_kwh,
                       inputs_digest = excluded.inputs_digest,
                       updated_at = excluded.updated_at""",
                (
                    calculation.tariff_code,
                    calculation.interval_type.value,
                    to_db(calculation.period_start),
                    to_db(calculation.period_end),
                    calculation.total_kwh,
                    calculation.cost_excl_tax,
                    calculation.cost_incl_tax,
                    calculation.standing_cost_excl_tax,
                    calculation.standing_cost_incl_tax,
                    calculation.avg_rate_excl_tax,
                    calculation.avg_rate_incl_tax,
                    calculation.source_kwh,
                    calculation.unpriced_kwh,
                    calculation.inputs_digest,
                    to_db(calculation.created_at),
                    to_db(calculation.updated_at),
                ),
            )
            conn.commit()
            stored = self.get_calculation(calculation.key)

        logger.debug("Stored calculation %s", calculation.key)
        return stored

    def delete_calculations(self, tariff_code: str | None = None) -> int:
        """Delete stored calculations (all, or one tariff). Returns rows deleted."""
        with self._lock, get_connection(self.db_path) as conn:
            if tariff_code is None:
                cursor = conn.execute("DELETE FROM cost_calculations")
            else:
                cursor = conn.execute("DELETE FROM cost_calculations WHERE tariff_code = ?", (tariff_code,))
            conn.commit()
            return cursor.rowcount
