# air_quality_analysis/sessions.py
"""
Lifecycle of remote forecast / impact-analysis sessions.

submit  -> remote call returns an id; a local stub (id, name, request time,
           no metadata) is recorded right away so the job stays tracked even
           if the process exits before results exist.
fetch   -> remote status is checked once. Anything other than "completed" is
           reported and nothing is written. A completed session gets its
           metrics stored as metadata and its result rows replaced in one
           transaction, so repeated fetches converge to the same rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from air_quality_analysis.client import SessionHandle, SessionOutcome
from air_quality_analysis.store import MeasurementStore, Session

logger = logging.getLogger(__name__)

ERR_BAD_RANGE = "start must be before end; got start={} end={}"


class SessionClient(Protocol):
    def create_forecast_session(
        self, dataset_name: str, target_column: str, start: datetime, end: datetime, result_interval: str = ...
    ) -> SessionHandle: ...

    def create_impact_session(
        self,
        dataset_name: str,
        event_name: str,
        target_column: str,
        start: datetime,
        end: datetime,
        result_interval: str = ...,
    ) -> SessionHandle: ...

    def get_session_results(self, session_id: str, target_column: str = ...) -> SessionOutcome: ...


@dataclass(frozen=True)
class FetchOutcome:
    session_id: str
    status: str
    stored_rows: int
    written: bool


def _check_range(start: datetime, end: datetime) -> None:
    if start >= end:
        raise ValueError(ERR_BAD_RANGE.format(start.isoformat(), end.isoformat()))


class SessionManager:
    def __init__(self, store: MeasurementStore, client: SessionClient, *, target_column: str = "value") -> None:
        self.store = store
        self.client = client
        self.target_column = target_column

    def _record(self, handle: SessionHandle, name: str | None, default_name: str) -> Session:
        session = Session(
            session_id=handle.session_id,
            name=name or default_name,
            requested_at=handle.requested_at or datetime.now(timezone.utc),
            metadata=None,
        )
        self.store.record_session(session)
        logger.info("Session %s (%s) submitted, status %s", session.session_id, session.name, handle.status)
        return session

    def submit_forecast(
        self,
        dataset_name: str,
        target_column: str,
        start: datetime,
        end: datetime,
        *,
        name: str | None = None,
        result_interval: str = "hour",
    ) -> Session:
        _check_range(start, end)
        handle = self.client.create_forecast_session(dataset_name, target_column, start, end, result_interval)
        return self._record(handle, name, f"forecast {dataset_name} {start:%Y-%m-%d}..{end:%Y-%m-%d}")

    def submit_impact(
        self,
        dataset_name: str,
        event_name: str,
        target_column: str,
        start: datetime,
        end: datetime,
        *,
        name: str | None = None,
        result_interval: str = "hour",
    ) -> Session:
        _check_range(start, end)
        handle = self.client.create_impact_session(
            dataset_name, event_name, target_column, start, end, result_interval
        )
        return self._record(handle, name, f"impact {event_name} on {dataset_name}")

    def fetch_results(self, session_id: str, target_column: str | None = None) -> FetchOutcome:
        """Result rows are read from ``target_column``, the column the dataset was uploaded under."""
        outcome = self.client.get_session_results(session_id, target_column=target_column or self.target_column)

        if not outcome.completed:
            logger.warning("Session %s is %s; no results stored, try again later", session_id, outcome.status)
            return FetchOutcome(session_id=session_id, status=outcome.status, stored_rows=0, written=False)

        with self.store.transaction():
            if self.store.get_session(session_id) is None:
                logger.info("Session %s was not submitted from this store; recording it", session_id)
                self.store.record_session(
                    Session(session_id=session_id, name=session_id, requested_at=datetime.now(timezone.utc))
                )
            n = self.store.replace_session_results(session_id, outcome.metrics, outcome.rows)

        logger.info("Stored %s result rows for session %s", f"{n:,}", session_id)
        return FetchOutcome(session_id=session_id, status=outcome.status, stored_rows=n, written=True)
