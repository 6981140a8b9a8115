"""Shared fixtures: a temporary store and a writer for raw hourly CSV exports."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path

import pytest

from air_quality_analysis.store import MeasurementStore
from air_quality_analysis.timeutil import LOCAL_STANDARD_TZ

HEADER = "Site,Parameter,Date (LST),Year,Month,Day,Hour,Value,Unit,Duration,QC Name"


def lst(day: int, hour: int, month: int = 1, year: int = 2015) -> datetime:
    """Local standard time helper for fixtures."""
    return datetime(year, month, day, hour, tzinfo=LOCAL_STANDARD_TZ)


def csv_line(ts: datetime, value: int, qc: str = "Valid") -> str:
    return (
        f"Beijing,PM2.5 - Principal,{ts:%Y-%m-%d %H:%M},"
        f"{ts.year},{ts.month},{ts.day},{ts.hour},{value},ug/m3,1 Hr,{qc}"
    )


@pytest.fixture
def store(tmp_path: Path) -> Iterator[MeasurementStore]:
    s = MeasurementStore(tmp_path / "air.db")
    yield s
    s.close()


@pytest.fixture
def write_csv(tmp_path: Path) -> Callable[..., Path]:
    def _write(name: str, rows: list[tuple[datetime, int, str]], header: str = HEADER) -> Path:
        path = tmp_path / name
        lines = [header, *(csv_line(ts, value, qc) for ts, value, qc in rows)]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write
