# air_quality_analysis/aggregate.py
"""Daily roll-up of the hourly canonical series, written back as ``derived`` rows."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import polars as pl

from air_quality_analysis.store import Measurement, MeasurementStore
from air_quality_analysis.timeutil import LOCAL_STANDARD_OFFSET

logger = logging.getLogger(__name__)


def measurements_frame(rows: list[Measurement]) -> pl.DataFrame:
    """Canonical rows as a polars frame with a UTC ``timestamp`` column."""
    return pl.DataFrame(
        {
            "timestamp": [r.timestamp.astimezone(timezone.utc).replace(tzinfo=None) for r in rows],
            "value": [r.value for r in rows],
            "source": [r.source for r in rows],
        },
        schema={"timestamp": pl.Datetime("us"), "value": pl.Float64, "source": pl.Utf8},
    )


def daily_means(df: pl.DataFrame, offset: timedelta = LOCAL_STANDARD_OFFSET) -> pl.DataFrame:
    """
    Mean value per local-standard-time calendar day.

    Returns: DataFrame [date, value, n_hours] sorted by date.
    """
    return (
        df.with_columns((pl.col("timestamp") + pl.duration(seconds=int(offset.total_seconds()))).dt.date().alias("date"))
        .group_by("date")
        .agg(
            pl.col("value").mean().alias("value"),
            pl.len().alias("n_hours"),
        )
        .sort("date")
    )


def aggregate_daily(store: MeasurementStore, offset: timedelta = LOCAL_STANDARD_OFFSET) -> int:
    """Replace all derived daily rows with fresh means of the hourly series; returns rows written."""
    hourly = store.measurement_rows(granularity="hour")
    df = measurements_frame([r for r in hourly if r.source in ("sensor", "imputed")])
    daily = daily_means(df, offset) if df.height else df.clear()

    tz = timezone(offset)
    n = 0
    with store.transaction():
        store.clear_measurements(source="derived", granularity="day")
        for row in daily.iter_rows(named=True):
            d = row["date"]
            store.insert_measurement(datetime(d.year, d.month, d.day, tzinfo=tz), row["value"], "derived", "day")
            n += 1

    partial = daily.filter(pl.col("n_hours") < 24).height if daily.height else 0
    if partial:
        logger.warning("%d day(s) have fewer than 24 hourly rows", partial)
    logger.info("Wrote %d derived daily rows", n)
    return n
