# air_quality_analysis/ingest.py
"""
Read raw hourly air quality CSV exports into staged readings.

Expected layout (one row per hour):
    Site, Parameter, Date (LST), Year, Month, Day, Hour, Value, Unit, Duration, QC Name

Only Year/Month/Day/Hour, Value and QC Name are used. Timestamps are composed as
local standard time at a fixed +08:00 offset; a reading is valid iff its
QC Name equals "Valid" (case-insensitive).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import polars as pl

from air_quality_analysis.store import MeasurementStore, StagedReading
from air_quality_analysis.timeutil import local_standard_time

logger = logging.getLogger(__name__)

TIME_COLS = ["Year", "Month", "Day", "Hour"]
VALUE_COL = "Value"
QC_COL = "QC Name"
REQUIRED_COLS = [*TIME_COLS, VALUE_COL, QC_COL]
VALID_QC = "valid"

ERR_MISSING_COLS = "File {} is missing required columns: {}"
ERR_BAD_FIELDS = "File {} has non-integer values in {}: {}"


@dataclass(frozen=True)
class ImportSummary:
    files: int
    rows: int
    valid: int
    invalid: int


def _read_raw(path: Path) -> pl.DataFrame:
    # Everything as text first so stray whitespace can be trimmed before casting.
    df = pl.read_csv(path, infer_schema=False)
    df = df.rename({c: c.strip() for c in df.columns})

    missing = [c for c in REQUIRED_COLS if c not in df.columns]
    if missing:
        raise ValueError(ERR_MISSING_COLS.format(path, missing))

    return df.select([pl.col(c).str.strip_chars() for c in REQUIRED_COLS]).filter(
        pl.any_horizontal([pl.col(c).is_not_null() & (pl.col(c) != "") for c in REQUIRED_COLS])
    )


def read_readings(path: Path | str) -> list[StagedReading]:
    """Parse one raw file into staged readings, preserving file order and duplicates."""
    path = Path(path)
    df = _read_raw(path)

    int_cols = [*TIME_COLS, VALUE_COL]
    try:
        df = df.with_columns([pl.col(c).cast(pl.Int64, strict=True) for c in int_cols])
    except (pl.exceptions.InvalidOperationError, pl.exceptions.ComputeError) as exc:
        raise ValueError(ERR_BAD_FIELDS.format(path, int_cols, exc)) from exc

    null_cols = [c for c in int_cols if df[c].null_count() > 0]
    if null_cols:
        raise ValueError(ERR_BAD_FIELDS.format(path, null_cols, "empty field"))

    df = df.with_columns((pl.col(QC_COL).fill_null("").str.to_lowercase() == VALID_QC).alias("is_valid"))

    readings = [
        StagedReading(
            timestamp=local_standard_time(row["Year"], row["Month"], row["Day"], row["Hour"]),
            value=row[VALUE_COL],
            is_valid=row["is_valid"],
        )
        for row in df.iter_rows(named=True)
    ]
    logger.debug("Parsed %d readings from %s", len(readings), path)
    return readings


def expand_file_pattern(pattern: str | Path) -> list[Path]:
    """Expand a file glob in its own directory (no recursion), sorted for determinism."""
    pattern = Path(pattern)
    directory = pattern.parent if str(pattern.parent) else Path(".")
    return sorted(p for p in directory.glob(pattern.name) if p.is_file())


def import_files(store: MeasurementStore, paths: list[Path]) -> ImportSummary:
    """
    Replace the staging area with the readings from ``paths``.

    Each file is one all-or-nothing batch. A failing file raises after earlier
    files have committed; none of its own readings are kept.
    """
    store.reset_staging()

    rows = valid = 0
    for i, path in enumerate(paths, 1):
        logger.info("Importing file %d/%d: %s", i, len(paths), path)
        readings = read_readings(path)
        store.import_batch(readings)
        n_valid = sum(1 for r in readings if r.is_valid)
        logger.info("  %s readings (%s valid, %s invalid)", f"{len(readings):,}", f"{n_valid:,}", f"{len(readings) - n_valid:,}")
        rows += len(readings)
        valid += n_valid

    return ImportSummary(files=len(paths), rows=rows, valid=valid, invalid=rows - valid)
