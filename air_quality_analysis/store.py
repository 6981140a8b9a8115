# air_quality_analysis/store.py
"""Local SQLite store for staged readings, the canonical series, and remote sessions.

Tables
------
- staged_readings:  raw imported readings tagged valid/invalid (replaced per import run)
- measurements:     canonical (timestamp, value, source, granularity) series
- sessions:         one row per submitted remote forecast / impact job
- session_results:  result points for a session (overwritten on every fetch)

Every logical unit of writes runs inside ``transaction()`` so a failure leaves
no partial unit behind. Previously committed units are never touched.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from air_quality_analysis.timeutil import from_storage, to_storage

logger = logging.getLogger(__name__)

SOURCES = ("sensor", "imputed", "derived")
GRANULARITIES = ("hour", "day")

# ISO text for the extremes of the representable range; used when bounds are omitted.
MIN_TIMESTAMP = "0001-01-01T00:00:00+00:00"
MAX_TIMESTAMP = "9999-12-31T23:59:59+00:00"

ERR_BAD_SOURCE = "source must be one of {}; got: {!r}"
ERR_BAD_GRANULARITY = "granularity must be one of {}; got: {!r}"

SCHEMA = """
CREATE TABLE IF NOT EXISTS staged_readings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    value INTEGER NOT NULL,
    is_valid INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS measurements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    value REAL NOT NULL,
    source TEXT NOT NULL,
    granularity TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_measurements_granularity_time
    ON measurements(granularity, timestamp);

CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    requested_at TEXT NOT NULL,
    metadata TEXT
);

CREATE TABLE IF NOT EXISTS session_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(session_id),
    timestamp TEXT NOT NULL,
    value REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_session_results_session
    ON session_results(session_id, timestamp);
"""

STAGING_TABLE = """
CREATE TABLE staged_readings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    value INTEGER NOT NULL,
    is_valid INTEGER NOT NULL DEFAULT 0
)
"""


@dataclass(frozen=True)
class StagedReading:
    timestamp: datetime
    value: int
    is_valid: bool


@dataclass(frozen=True)
class Measurement:
    timestamp: datetime
    value: float
    source: str
    granularity: str


@dataclass(frozen=True)
class Session:
    session_id: str
    name: str
    requested_at: datetime
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class SessionResult:
    session_id: str
    timestamp: datetime
    value: float


def _check_source(source: str) -> None:
    if source not in SOURCES:
        raise ValueError(ERR_BAD_SOURCE.format(SOURCES, source))


def _check_granularity(granularity: str) -> None:
    if granularity not in GRANULARITIES:
        raise ValueError(ERR_BAD_GRANULARITY.format(GRANULARITIES, granularity))


def _bounds(start: datetime | None, end: datetime | None) -> tuple[str, str]:
    # Stored text has whole seconds; a fractional start must not admit the second it falls in.
    if start is not None and start.microsecond:
        start = start.replace(microsecond=0) + timedelta(seconds=1)
    lo = to_storage(start) if start is not None else MIN_TIMESTAMP
    hi = to_storage(end) if end is not None else MAX_TIMESTAMP
    return lo, hi


class MeasurementStore:
    """SQLite-backed store; one connection per instance, single writer."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: transactions are opened explicitly in transaction().
        self.conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._depth = 0
        self.ensure_schema()

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> MeasurementStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def ensure_schema(self) -> None:
        self.conn.executescript(SCHEMA)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run the enclosed writes as one unit.

        Nested use joins the outer transaction; only the outermost block
        commits or rolls back.
        """
        if self._depth > 0:
            self._depth += 1
            try:
                yield self.conn
            finally:
                self._depth -= 1
            return

        self.conn.execute("BEGIN")
        self._depth = 1
        try:
            yield self.conn
            self.conn.execute("COMMIT")
        except BaseException:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise
        finally:
            self._depth = 0

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def reset_staging(self) -> None:
        """Drop and recreate the staging table so an import run starts empty."""
        with self.transaction() as conn:
            conn.execute("DROP TABLE IF EXISTS staged_readings")
            conn.execute(STAGING_TABLE)
        logger.debug("Staging table reset in %s", self.db_path)

    def stage(self, reading: StagedReading) -> None:
        self.conn.execute(
            "INSERT INTO staged_readings (timestamp, value, is_valid) VALUES (?, ?, ?)",
            (to_storage(reading.timestamp), int(reading.value), int(bool(reading.is_valid))),
        )

    def import_batch(self, readings: Iterable[StagedReading]) -> int:
        """Stage a whole batch; either every reading commits or none does."""
        n = 0
        with self.transaction():
            for reading in readings:
                self.stage(reading)
                n += 1
        return n

    def staged_readings(self, valid: bool | None = None) -> list[StagedReading]:
        sql = "SELECT timestamp, value, is_valid FROM staged_readings"
        params: tuple[Any, ...] = ()
        if valid is not None:
            sql += " WHERE is_valid = ?"
            params = (int(valid),)
        sql += " ORDER BY timestamp, id"
        return [
            StagedReading(from_storage(ts), int(value), bool(is_valid))
            for ts, value, is_valid in self.conn.execute(sql, params)
        ]

    def invalid_timestamps(self) -> list[datetime]:
        rows = self.conn.execute("SELECT timestamp FROM staged_readings WHERE is_valid = 0 ORDER BY timestamp, id")
        return [from_storage(ts) for (ts,) in rows]

    # ------------------------------------------------------------------
    # Canonical measurements
    # ------------------------------------------------------------------

    def insert_measurement(self, timestamp: datetime, value: float, source: str, granularity: str = "hour") -> None:
        _check_source(source)
        _check_granularity(granularity)
        self.conn.execute(
            "INSERT INTO measurements (timestamp, value, source, granularity) VALUES (?, ?, ?, ?)",
            (to_storage(timestamp), float(value), source, granularity),
        )

    def copy_valid_staged(self) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO measurements (timestamp, value, source, granularity)
            SELECT timestamp, value, 'sensor', 'hour' FROM staged_readings WHERE is_valid = 1
            ORDER BY timestamp, id
            """
        )
        return cur.rowcount

    def clear_measurements(self, *, source: str | None = None, granularity: str | None = None) -> int:
        """Delete canonical rows; used only when a reconstruction or aggregation run replaces its output."""
        clauses: list[str] = []
        params: list[Any] = []
        if source is not None:
            _check_source(source)
            clauses.append("source = ?")
            params.append(source)
        if granularity is not None:
            _check_granularity(granularity)
            clauses.append("granularity = ?")
            params.append(granularity)
        sql = "DELETE FROM measurements"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        return self.conn.execute(sql, params).rowcount

    def _select_measurements(
        self,
        columns: str,
        start: datetime | None,
        end: datetime | None,
        source: str | None,
        granularity: str,
    ) -> sqlite3.Cursor:
        _check_granularity(granularity)
        lo, hi = _bounds(start, end)
        sql = f"SELECT {columns} FROM measurements WHERE granularity = ? AND timestamp >= ? AND timestamp <= ?"
        params: list[Any] = [granularity, lo, hi]
        if source is not None:
            _check_source(source)
            sql += " AND source = ?"
            params.append(source)
        sql += " ORDER BY timestamp, id"
        return self.conn.execute(sql, params)

    def query_measurements(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        source: str | None = None,
        granularity: str = "hour",
    ) -> list[tuple[datetime, float]]:
        """Ascending (timestamp, value) pairs; bounds are inclusive and default to the full range."""
        cur = self._select_measurements("timestamp, value", start, end, source, granularity)
        return [(from_storage(ts), float(value)) for ts, value in cur]

    def measurement_rows(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        source: str | None = None,
        granularity: str = "hour",
    ) -> list[Measurement]:
        cur = self._select_measurements("timestamp, value, source, granularity", start, end, source, granularity)
        return [Measurement(from_storage(ts), float(value), src, gran) for ts, value, src, gran in cur]

    def nearest_sensor_before(self, ts: datetime) -> tuple[datetime, float] | None:
        row = self.conn.execute(
            """
            SELECT timestamp, value FROM measurements
            WHERE source = 'sensor' AND granularity = 'hour' AND timestamp < ?
            ORDER BY timestamp DESC LIMIT 1
            """,
            (to_storage(ts),),
        ).fetchone()
        return (from_storage(row[0]), float(row[1])) if row else None

    def nearest_sensor_after(self, ts: datetime) -> tuple[datetime, float] | None:
        row = self.conn.execute(
            """
            SELECT timestamp, value FROM measurements
            WHERE source = 'sensor' AND granularity = 'hour' AND timestamp > ?
            ORDER BY timestamp ASC LIMIT 1
            """,
            (to_storage(ts),),
        ).fetchone()
        return (from_storage(row[0]), float(row[1])) if row else None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def record_session(self, session: Session) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO sessions (session_id, name, requested_at, metadata) VALUES (?, ?, ?, ?)",
                (
                    session.session_id,
                    session.name,
                    to_storage(session.requested_at),
                    json.dumps(session.metadata, sort_keys=True) if session.metadata is not None else None,
                ),
            )

    def get_session(self, session_id: str) -> Session | None:
        row = self.conn.execute(
            "SELECT session_id, name, requested_at, metadata FROM sessions WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self) -> list[Session]:
        rows = self.conn.execute("SELECT session_id, name, requested_at, metadata FROM sessions ORDER BY requested_at")
        return [self._session_from_row(row) for row in rows]

    @staticmethod
    def _session_from_row(row: tuple[Any, ...]) -> Session:
        session_id, name, requested_at, metadata = row
        return Session(
            session_id=session_id,
            name=name,
            requested_at=from_storage(requested_at),
            metadata=json.loads(metadata) if metadata is not None else None,
        )

    def replace_session_results(
        self,
        session_id: str,
        metadata: dict[str, Any] | None,
        rows: Iterable[tuple[datetime, float]],
    ) -> int:
        """Store metadata and overwrite the full result set for a session in one transaction."""
        n = 0
        with self.transaction() as conn:
            conn.execute(
                "UPDATE sessions SET metadata = ? WHERE session_id = ?",
                (json.dumps(metadata, sort_keys=True) if metadata is not None else None, session_id),
            )
            conn.execute("DELETE FROM session_results WHERE session_id = ?", (session_id,))
            for ts, value in rows:
                conn.execute(
                    "INSERT INTO session_results (session_id, timestamp, value) VALUES (?, ?, ?)",
                    (session_id, to_storage(ts), float(value)),
                )
                n += 1
        return n

    def session_results(self, session_id: str) -> list[SessionResult]:
        rows = self.conn.execute(
            "SELECT session_id, timestamp, value FROM session_results WHERE session_id = ? ORDER BY timestamp, id",
            (session_id,),
        )
        return [SessionResult(sid, from_storage(ts), float(value)) for sid, ts, value in rows]

    def count(self, table: str) -> int:
        if table not in {"staged_readings", "measurements", "sessions", "session_results"}:
            raise ValueError(f"Unknown table: {table}")
        return int(self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])  # noqa: S608
