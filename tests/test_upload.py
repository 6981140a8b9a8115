"""Tests for chunked dataset upload"""

import json
from datetime import timedelta

import pytest
from conftest import lst

from air_quality_analysis.client import ApiError
from air_quality_analysis.upload import chunk_bounds, upload


class RecordingClient:
    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    def create_dataset(self, name, rows, target_column="value"):
        index = len(self.calls)
        self.calls.append((name, list(rows)))
        if index in self.fail_on:
            raise ApiError("HTTP 413: payload too large", status_code=413)
        return {"dataSetName": name}


def _rows(n):
    start = lst(1, 0)
    return [(start + timedelta(hours=i), float(i)) for i in range(n)]


def test_12000_rows_in_chunks_of_5000_is_three_requests():
    client = RecordingClient()

    results = upload(client, "beijing", _rows(12000), 5000)

    assert [len(rows) for _, rows in client.calls] == [5000, 5000, 2000]
    assert {name for name, _ in client.calls} == {"beijing"}
    assert all(r.ok for r in results)


def test_exact_multiple_sends_no_empty_trailing_request():
    client = RecordingClient()

    upload(client, "beijing", _rows(10000), 5000)

    assert [len(rows) for _, rows in client.calls] == [5000, 5000]


@pytest.mark.parametrize(
    ("n", "size", "expected"),
    [
        (0, 5000, []),
        (1, 5000, [(0, 1)]),
        (5000, 5000, [(0, 5000)]),
        (5001, 5000, [(0, 5000), (5000, 5001)]),
        (7, 3, [(0, 3), (3, 6), (6, 7)]),
    ],
)
def test_chunk_bounds(n, size, expected):
    assert chunk_bounds(n, size) == expected


def test_chunk_bounds_rejects_non_positive_size():
    with pytest.raises(ValueError, match="chunk_size"):
        chunk_bounds(10, 0)


def test_chunks_preserve_row_order():
    client = RecordingClient()
    rows = _rows(7)

    upload(client, "beijing", rows, 3)

    assert [row for _, chunk in client.calls for row in chunk] == rows


def test_failed_chunk_does_not_stop_or_undo_others(tmp_path):
    client = RecordingClient(fail_on={1})
    manifest = tmp_path / "runs" / "upload.jsonl"

    results = upload(client, "beijing", _rows(12000), 5000, manifest_path=manifest)

    assert [r.status for r in results] == ["success", "error", "success"]
    assert "413" in results[1].error
    assert results[0].confirmation == {"dataSetName": "beijing"}
    assert results[1].confirmation is None
    assert len(client.calls) == 3

    records = [json.loads(line) for line in manifest.read_text(encoding="utf-8").splitlines()]
    assert [(r["index"], r["rows"], r["status"]) for r in records] == [
        (0, 5000, "success"),
        (1, 5000, "error"),
        (2, 2000, "success"),
    ]
    assert all(r["dataset"] == "beijing" for r in records)
    assert records[2]["confirmation"] == {"dataSetName": "beijing"}


def test_fail_fast_stops_after_first_failure():
    client = RecordingClient(fail_on={0})

    results = upload(client, "beijing", _rows(12000), 5000, fail_fast=True)

    assert len(client.calls) == 1
    assert [r.status for r in results] == ["error"]


def test_empty_upload_issues_no_requests():
    client = RecordingClient()
    assert upload(client, "beijing", [], 5000) == []
    assert client.calls == []


def test_target_column_is_passed_to_every_chunk():
    client = RecordingClient()
    targets = []
    create = client.create_dataset

    def create_and_record(name, rows, target_column="value"):
        targets.append(target_column)
        return create(name, rows, target_column)

    client.create_dataset = create_and_record
    upload(client, "beijing", _rows(7), 3, target_column="pm25")

    assert targets == ["pm25", "pm25", "pm25"]
