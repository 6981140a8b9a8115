# air_quality_analysis/client.py
"""HTTP client for the remote forecasting / impact-analysis service.

The service is a black box: this module only shapes requests and decodes
responses. Failures are raised as ``ApiError`` without retries; the caller
decides what to report.

Endpoints used:
- PUT  /data/{name}               create or extend a dataset from rows
- GET  /data                      list datasets
- POST /sessions/forecast         start a forecast session
- POST /sessions/impact           start an impact-analysis session
- GET  /sessions                  list sessions
- GET  /sessions/{id}/results     status, metrics and result rows for a session
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://ml.nexosis.com/v1"
DEFAULT_TIMEOUT_SECONDS = 60.0

STATUS_COMPLETED = "completed"


class ApiError(RuntimeError):
    """Raised when a request to the remote service fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApiDecodeError(ApiError):
    """Raised when a response body cannot be decoded."""


@dataclass(frozen=True)
class SessionHandle:
    session_id: str
    status: str
    requested_at: datetime | None = None


@dataclass(frozen=True)
class SessionOutcome:
    session_id: str
    status: str
    metrics: dict[str, Any] = field(default_factory=dict)
    rows: list[tuple[datetime, float]] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.status.lower() == STATUS_COMPLETED


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    ts = datetime.fromisoformat(text)
    # The service reports UTC; tolerate payloads that omit the offset.
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


class ApiClient:
    """Thin wrapper over one ``requests.Session`` carrying the API key."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str = "",
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({"api-key": api_key, "Accept": "application/json"})

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug("%s %s", method, url)
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            detail = exc.response.text[:500] if exc.response is not None else ""
            raise ApiError(f"{method} {path} failed with HTTP {status}: {detail}", status_code=status) from exc
        except requests.RequestException as exc:
            raise ApiError(f"{method} {path} failed: {type(exc).__name__}: {exc}") from exc

        if not response.content:
            return {}
        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise ApiDecodeError(f"{method} {path} returned invalid JSON: {exc}", response.status_code) from exc

    # ------------------------------------------------------------------
    # Datasets
    # ------------------------------------------------------------------

    def create_dataset(self, name: str, rows: Sequence[tuple[datetime, float]], target_column: str = "value") -> dict:
        """Submit rows under a dataset name; repeated calls extend the same dataset."""
        payload = {
            "columns": {
                "timestamp": {"dataType": "date", "role": "timestamp"},
                target_column: {"dataType": "numeric", "role": "target"},
            },
            "data": [{"timestamp": ts.isoformat(), target_column: value} for ts, value in rows],
        }
        return self._request("PUT", f"/data/{quote(name, safe='')}", json=payload)

    def list_datasets(self) -> list[dict[str, Any]]:
        body = self._request("GET", "/data")
        return list(body.get("items", [])) if isinstance(body, dict) else list(body)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _create_session(self, kind: str, payload: dict[str, Any]) -> SessionHandle:
        body = self._request("POST", f"/sessions/{kind}", json=payload)
        try:
            session_id = str(body["sessionId"])
        except (KeyError, TypeError) as exc:
            raise ApiDecodeError(f"POST /sessions/{kind} response has no sessionId") from exc
        return SessionHandle(
            session_id=session_id,
            status=str(body.get("status", "requested")),
            requested_at=_parse_time(body.get("requestedDate")),
        )

    def create_forecast_session(
        self,
        dataset_name: str,
        target_column: str,
        start: datetime,
        end: datetime,
        result_interval: str = "hour",
    ) -> SessionHandle:
        return self._create_session(
            "forecast",
            {
                "dataSourceName": dataset_name,
                "targetColumn": target_column,
                "startDate": start.isoformat(),
                "endDate": end.isoformat(),
                "resultInterval": result_interval,
            },
        )

    def create_impact_session(
        self,
        dataset_name: str,
        event_name: str,
        target_column: str,
        start: datetime,
        end: datetime,
        result_interval: str = "hour",
    ) -> SessionHandle:
        return self._create_session(
            "impact",
            {
                "dataSourceName": dataset_name,
                "eventName": event_name,
                "targetColumn": target_column,
                "startDate": start.isoformat(),
                "endDate": end.isoformat(),
                "resultInterval": result_interval,
            },
        )

    def list_sessions(self) -> list[dict[str, Any]]:
        body = self._request("GET", "/sessions")
        return list(body.get("items", [])) if isinstance(body, dict) else list(body)

    def get_session_results(self, session_id: str, target_column: str = "value") -> SessionOutcome:
        body = self._request("GET", f"/sessions/{quote(session_id, safe='')}/results")
        if not isinstance(body, dict):
            raise ApiDecodeError(f"Unexpected results payload for session {session_id}")

        rows: list[tuple[datetime, float]] = []
        for item in body.get("data") or []:
            try:
                ts = _parse_time(item["timestamp"])
                value = float(item[target_column])
            except (KeyError, TypeError, ValueError) as exc:
                raise ApiDecodeError(f"Malformed result row for session {session_id}: {item!r}") from exc
            if ts is None:
                raise ApiDecodeError(f"Result row without timestamp for session {session_id}: {item!r}")
            rows.append((ts, value))

        return SessionOutcome(
            session_id=str(body.get("sessionId", session_id)),
            status=str(body.get("status", "unknown")),
            metrics=dict(body.get("metrics") or {}),
            rows=rows,
        )
