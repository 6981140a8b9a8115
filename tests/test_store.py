"""Tests for the SQLite store: staging atomicity, canonical queries and session results"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest
from conftest import lst

from air_quality_analysis.store import MeasurementStore, Session, StagedReading


def _readings_then_boom():
    yield StagedReading(lst(1, 0), 1, True)
    yield StagedReading(lst(1, 1), 2, True)
    raise RuntimeError("parse failure mid-batch")


def test_schema_is_created_idempotently(tmp_path):
    path = tmp_path / "air.db"
    with MeasurementStore(path) as s:
        s.insert_measurement(lst(1, 0), 1.0, "sensor")
    with MeasurementStore(path) as s:
        assert s.count("measurements") == 1


def test_import_batch_is_all_or_nothing(store):
    with pytest.raises(RuntimeError):
        store.import_batch(_readings_then_boom())
    assert store.count("staged_readings") == 0

    n = store.import_batch([StagedReading(lst(1, 0), 1, True), StagedReading(lst(1, 1), 2, False)])
    assert n == 2
    assert store.invalid_timestamps() == [lst(1, 1)]


def test_query_measurements_bounds_are_inclusive_and_ordered(store):
    with store.transaction():
        for hour in [3, 1, 2, 0]:
            store.insert_measurement(lst(1, hour), float(hour), "sensor")
        store.insert_measurement(lst(1, 0), 50.0, "derived", "day")

    assert [v for _, v in store.query_measurements()] == [0.0, 1.0, 2.0, 3.0]
    assert [v for _, v in store.query_measurements(lst(1, 1), lst(1, 2))] == [1.0, 2.0]
    assert [v for _, v in store.query_measurements(start=lst(1, 2))] == [2.0, 3.0]
    assert [v for _, v in store.query_measurements(end=lst(1, 0))] == [0.0]
    assert store.query_measurements(granularity="day") == [(lst(1, 0), 50.0)]


def test_query_measurements_accepts_bounds_in_any_offset(store):
    store.insert_measurement(lst(1, 8), 8.0, "sensor")

    utc_same_instant = datetime(2015, 1, 1, 0, tzinfo=timezone.utc)
    assert store.query_measurements(utc_same_instant, utc_same_instant) == [(lst(1, 8), 8.0)]


def test_fractional_bounds_stay_inclusive(store):
    store.insert_measurement(lst(1, 0), 0.0, "sensor")
    store.insert_measurement(lst(1, 1), 1.0, "sensor")
    half = timedelta(milliseconds=500)

    assert store.query_measurements(start=lst(1, 0) + half) == [(lst(1, 1), 1.0)]
    assert store.query_measurements(end=lst(1, 1) + half) == [(lst(1, 0), 0.0), (lst(1, 1), 1.0)]
    assert store.query_measurements(lst(1, 0) + half, lst(1, 0) + half) == []


def test_source_filter(store):
    store.insert_measurement(lst(1, 0), 1.0, "sensor")
    store.insert_measurement(lst(1, 1), 93.0, "imputed")

    assert store.query_measurements(source="imputed") == [(lst(1, 1), 93.0)]


def test_invalid_tags_are_rejected(store):
    with pytest.raises(ValueError, match="source"):
        store.insert_measurement(lst(1, 0), 1.0, "guess")
    with pytest.raises(ValueError, match="granularity"):
        store.query_measurements(granularity="minute")
    assert store.count("measurements") == 0


def test_naive_timestamps_are_rejected(store):
    with pytest.raises(ValueError, match="timezone-aware"):
        store.insert_measurement(datetime(2015, 1, 1), 1.0, "sensor")


def test_replace_session_results_overwrites(store):
    store.record_session(Session("s-1", "forecast", lst(2, 0)))

    store.replace_session_results("s-1", {"mape": 0.1}, [(lst(3, 0), 1.0), (lst(3, 1), 2.0)])
    store.replace_session_results("s-1", {"mape": 0.2}, [(lst(3, 0), 5.0)])

    assert [(r.timestamp, r.value) for r in store.session_results("s-1")] == [(lst(3, 0), 5.0)]
    assert store.get_session("s-1").metadata == {"mape": 0.2}


def test_failed_replace_leaves_prior_results(store):
    store.record_session(Session("s-1", "forecast", lst(2, 0)))
    store.replace_session_results("s-1", {"mape": 0.1}, [(lst(3, 0), 1.0)])

    def rows():
        yield (lst(3, 0), 7.0)
        raise RuntimeError("connection dropped")

    with pytest.raises(RuntimeError):
        store.replace_session_results("s-1", {"mape": 0.5}, rows())

    assert [r.value for r in store.session_results("s-1")] == [1.0]
    assert store.get_session("s-1").metadata == {"mape": 0.1}


def test_session_stub_round_trip(store):
    store.record_session(Session("abc", "impact holiday", lst(2, 10)))

    session = store.get_session("abc")
    assert session == Session("abc", "impact holiday", lst(2, 10), None)
    assert store.get_session("missing") is None
    assert [s.session_id for s in store.list_sessions()] == ["abc"]


class _CommitFails:
    """Connection wrapper whose COMMIT fails, as on a full disk."""

    def __init__(self, conn):
        self._conn = conn

    def execute(self, sql, *args):
        if sql == "COMMIT":
            raise sqlite3.OperationalError("database or disk is full")
        return self._conn.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._conn, name)


def test_failed_commit_rolls_back(store):
    real = store.conn
    store.conn = _CommitFails(real)
    try:
        with pytest.raises(sqlite3.OperationalError):
            with store.transaction():
                store.insert_measurement(lst(1, 0), 1.0, "sensor")
    finally:
        store.conn = real

    assert not real.in_transaction
    assert store.count("measurements") == 0
