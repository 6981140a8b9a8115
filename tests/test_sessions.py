"""Tests for the session lifecycle: submit, fetch, replace"""

import json
from unittest.mock import patch

import pytest
import requests
from conftest import lst

from air_quality_analysis.client import ApiClient, ApiError, SessionHandle, SessionOutcome
from air_quality_analysis.sessions import SessionManager
from air_quality_analysis.upload import upload


class FakeSessionClient:
    def __init__(self, outcome=None, submit_error=None, fetch_error=None):
        self.outcome = outcome
        self.submit_error = submit_error
        self.fetch_error = fetch_error
        self.submitted = []

    def _submit(self, kind, *args):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((kind, *args))
        return SessionHandle(session_id=f"{kind}-1", status="requested", requested_at=lst(5, 12))

    def create_forecast_session(self, dataset_name, target_column, start, end, result_interval="hour"):
        return self._submit("forecast", dataset_name, target_column, start, end, result_interval)

    def create_impact_session(self, dataset_name, event_name, target_column, start, end, result_interval="hour"):
        return self._submit("impact", dataset_name, event_name, target_column, start, end, result_interval)

    def get_session_results(self, session_id, target_column="value"):
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.outcome


def _completed(session_id="forecast-1", values=(1.0, 2.0, 3.0)):
    return SessionOutcome(
        session_id=session_id,
        status="completed",
        metrics={"mape": 0.12},
        rows=[(lst(10, h), v) for h, v in enumerate(values)],
    )


def test_submit_forecast_records_stub(store):
    client = FakeSessionClient()
    manager = SessionManager(store, client)

    session = manager.submit_forecast("beijing", "value", lst(10, 0), lst(12, 0), name="july")

    assert client.submitted == [("forecast", "beijing", "value", lst(10, 0), lst(12, 0), "hour")]
    stored = store.get_session("forecast-1")
    assert stored == session
    assert stored.name == "july"
    assert stored.requested_at == lst(5, 12)
    assert stored.metadata is None


def test_submit_impact_passes_event_name(store):
    client = FakeSessionClient()

    session = SessionManager(store, client).submit_impact("beijing", "fireworks", "value", lst(10, 0), lst(12, 0))

    assert client.submitted[0][:3] == ("impact", "beijing", "fireworks")
    assert session.name == "impact fireworks on beijing"
    assert store.count("sessions") == 1


def test_submission_failure_writes_nothing(store):
    client = FakeSessionClient(submit_error=ApiError("HTTP 500"))

    with pytest.raises(ApiError):
        SessionManager(store, client).submit_forecast("beijing", "value", lst(10, 0), lst(12, 0))

    assert store.count("sessions") == 0


def test_reversed_range_is_rejected_before_remote_call(store):
    client = FakeSessionClient()

    with pytest.raises(ValueError, match="start must be before end"):
        SessionManager(store, client).submit_forecast("beijing", "value", lst(12, 0), lst(10, 0))

    assert client.submitted == []
    assert store.count("sessions") == 0


def test_fetch_completed_stores_metrics_and_results(store):
    client = FakeSessionClient()
    manager = SessionManager(store, client)
    manager.submit_forecast("beijing", "value", lst(10, 0), lst(12, 0))
    client.outcome = _completed()

    outcome = manager.fetch_results("forecast-1")

    assert outcome.written
    assert outcome.stored_rows == 3
    assert store.get_session("forecast-1").metadata == {"mape": 0.12}
    assert [r.value for r in store.session_results("forecast-1")] == [1.0, 2.0, 3.0]


def test_repeated_fetch_keeps_one_copy_of_each_row(store):
    client = FakeSessionClient()
    manager = SessionManager(store, client)
    manager.submit_forecast("beijing", "value", lst(10, 0), lst(12, 0))
    client.outcome = _completed()

    manager.fetch_results("forecast-1")
    manager.fetch_results("forecast-1")

    results = store.session_results("forecast-1")
    assert [(r.timestamp, r.value) for r in results] == [(lst(10, h), float(h + 1)) for h in range(3)]


@pytest.mark.parametrize("status", ["requested", "started", "failed", "cancelled"])
def test_fetch_non_completed_performs_no_writes(store, status):
    client = FakeSessionClient()
    manager = SessionManager(store, client)
    manager.submit_forecast("beijing", "value", lst(10, 0), lst(12, 0))
    before = store.get_session("forecast-1")
    client.outcome = SessionOutcome(session_id="forecast-1", status=status)

    outcome = manager.fetch_results("forecast-1")

    assert not outcome.written
    assert outcome.status == status
    assert store.get_session("forecast-1") == before
    assert store.count("session_results") == 0
    assert store.count("sessions") == 1


def test_fetch_failure_leaves_prior_results(store):
    client = FakeSessionClient()
    manager = SessionManager(store, client)
    manager.submit_forecast("beijing", "value", lst(10, 0), lst(12, 0))
    client.outcome = _completed()
    manager.fetch_results("forecast-1")

    client.fetch_error = ApiError("connection reset")
    with pytest.raises(ApiError):
        manager.fetch_results("forecast-1")

    assert len(store.session_results("forecast-1")) == 3


def test_fetch_for_session_unknown_locally_records_it(store):
    client = FakeSessionClient(outcome=_completed(session_id="remote-9", values=(4.0,)))

    SessionManager(store, client).fetch_results("remote-9")

    session = store.get_session("remote-9")
    assert session.name == "remote-9"
    assert session.metadata == {"mape": 0.12}
    assert [r.value for r in store.session_results("remote-9")] == [4.0]


def _json_response(body):
    resp = requests.models.Response()
    resp.status_code = 200
    resp._content = json.dumps(body).encode()
    return resp


def test_non_default_target_column_flows_from_upload_to_results(store):
    client = ApiClient("https://example.test/v1", "k")
    manager = SessionManager(store, client, target_column="pm25")
    responses = [
        _json_response({"dataSetName": "beijing", "rowCount": 2}),
        _json_response({"sessionId": "s", "status": "requested"}),
        _json_response(
            {
                "sessionId": "s",
                "status": "completed",
                "metrics": {"mape": 0.1},
                "data": [{"timestamp": "2015-01-01T00:00:00Z", "pm25": 5}],
            }
        ),
    ]

    with patch.object(client.session, "request", side_effect=responses) as request:
        results = upload(client, "beijing", [(lst(1, 8), 30.0), (lst(1, 9), 31.0)], target_column="pm25")
        manager.submit_forecast("beijing", "pm25", lst(10, 0), lst(12, 0))
        outcome = manager.fetch_results("s")

    upload_payload = request.call_args_list[0].kwargs["json"]
    assert set(upload_payload["columns"]) == {"timestamp", "pm25"}
    assert upload_payload["data"][0]["pm25"] == 30.0
    assert request.call_args_list[1].kwargs["json"]["targetColumn"] == "pm25"
    assert results[0].confirmation == {"dataSetName": "beijing", "rowCount": 2}
    assert outcome.written
    assert [r.value for r in store.session_results("s")] == [5.0]
