# air_quality_analysis/reconstruct.py
"""
Continuity reconstruction: staged readings -> gap-free hourly canonical series.

Stage A copies every valid staged reading into ``measurements`` as ``sensor``.
Stage B walks the invalid timestamps in ascending order, groups them into runs
(consecutive entries no more than one hour apart), and writes one ``imputed``
row per timestamp when each run is flushed.

Each stage is its own transaction. A crash during stage B leaves the store
holding the sensor rows only; rerunning reconstruction recovers.

The default imputation writes a fixed placeholder value. It is not a statistical
estimate; ``LinearImputation`` is available when bounding sensor readings
should be used instead.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from air_quality_analysis.store import MeasurementStore
from air_quality_analysis.timeutil import ONE_HOUR

logger = logging.getLogger(__name__)

PLACEHOLDER_VALUE = 93

Reading = tuple[datetime, float]


class ImputationStrategy(Protocol):
    def impute(self, before: Reading | None, after: Reading | None, ts: datetime) -> float: ...


@dataclass(frozen=True)
class ConstantImputation:
    """Same value for every missing hour regardless of neighbours."""

    value: float = PLACEHOLDER_VALUE

    def impute(self, before: Reading | None, after: Reading | None, ts: datetime) -> float:
        return float(self.value)


@dataclass(frozen=True)
class LinearImputation:
    """
    Linear interpolation in time between the bounding sensor readings.

    With only one bound available its value is carried over; with none the
    fallback strategy decides.
    """

    fallback: ConstantImputation = ConstantImputation()

    def impute(self, before: Reading | None, after: Reading | None, ts: datetime) -> float:
        if before is not None and after is not None:
            (t0, v0), (t1, v1) = before, after
            span = (t1 - t0).total_seconds()
            if span <= 0:
                return float(v0)
            frac = (ts - t0).total_seconds() / span
            return float(v0 + (v1 - v0) * frac)
        if before is not None:
            return float(before[1])
        if after is not None:
            return float(after[1])
        return self.fallback.impute(before, after, ts)


IMPUTATION_STRATEGIES = ("constant", "linear")


def make_strategy(name: str, placeholder: float = PLACEHOLDER_VALUE) -> ImputationStrategy:
    if name == "constant":
        return ConstantImputation(placeholder)
    if name == "linear":
        return LinearImputation(ConstantImputation(placeholder))
    raise ValueError(f"Unknown imputation strategy {name!r}; expected one of {IMPUTATION_STRATEGIES}")


def find_gap_runs(missing: Sequence[datetime]) -> list[list[datetime]]:
    """
    Group ascending invalid timestamps into runs.

    A run is extended while the next timestamp is within one hour of the
    current one. A jump of more than one hour (total elapsed time) flushes the
    run up to and including the current position; the next run starts at the
    right endpoint of the jump. The final run is flushed at end of input.
    """
    runs: list[list[datetime]] = []
    start = 0
    for i in range(len(missing) - 1):
        if missing[i + 1] - missing[i] > ONE_HOUR:
            runs.append(list(missing[start : i + 1]))
            start = i + 1
    if start < len(missing):
        runs.append(list(missing[start:]))
    return runs


@dataclass(frozen=True)
class ReconstructionSummary:
    sensor_rows: int
    imputed_rows: int
    runs: int


class Reconstructor:
    """Builds the hourly canonical series from the staging table."""

    def __init__(self, store: MeasurementStore, strategy: ImputationStrategy | None = None) -> None:
        self.store = store
        self.strategy = strategy if strategy is not None else ConstantImputation()

    def copy_valid(self, *, clear: bool = True) -> int:
        with self.store.transaction():
            if clear:
                removed = self.store.clear_measurements()
                if removed:
                    logger.info("Cleared %s existing canonical rows", f"{removed:,}")
            n = self.store.copy_valid_staged()
        logger.info("Copied %s valid readings as sensor rows", f"{n:,}")
        return n

    def fill_gaps(self) -> tuple[int, int]:
        """Impute one hourly row per invalid timestamp; returns (rows, runs)."""
        with self.store.transaction():
            missing = self.store.invalid_timestamps()
            runs = find_gap_runs(missing)
            n = 0
            for run in runs:
                before = self.store.nearest_sensor_before(run[0])
                after = self.store.nearest_sensor_after(run[-1])
                logger.debug("Flushing run of %d hour(s) starting %s", len(run), run[0].isoformat())
                for ts in run:
                    value = self.strategy.impute(before, after, ts)
                    self.store.insert_measurement(ts, value, "imputed", "hour")
                    n += 1
        logger.info("Imputed %s rows across %d gap run(s)", f"{n:,}", len(runs))
        return n, len(runs)

    def run(self, *, clear: bool = True) -> ReconstructionSummary:
        sensor_rows = self.copy_valid(clear=clear)
        imputed_rows, runs = self.fill_gaps()
        return ReconstructionSummary(sensor_rows=sensor_rows, imputed_rows=imputed_rows, runs=runs)
