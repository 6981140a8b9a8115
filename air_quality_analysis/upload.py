# air_quality_analysis/upload.py
"""Chunked upload of the canonical series to the remote service.

The service caps request size, so rows are split into fixed-size chunks and
submitted one after another under a single dataset name:
- ceil(N / chunk_size) requests, never an empty trailing request
- each chunk stands alone: a failed chunk is recorded and does not undo
  chunks that were already confirmed
- an optional JSONL manifest records one line per chunk for provenance
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from air_quality_analysis.client import ApiError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 5000

ERR_BAD_CHUNK_SIZE = "chunk_size must be >= 1; got: {}"


class DatasetClient(Protocol):
    def create_dataset(
        self, name: str, rows: Sequence[tuple[datetime, float]], target_column: str = ...
    ) -> Any: ...


@dataclass(frozen=True)
class ChunkResult:
    index: int
    start: int
    rows: int
    status: str
    timestamp: str
    error: str | None = None
    confirmation: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def chunk_bounds(n_rows: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[tuple[int, int]]:
    """[start, stop) offsets for each chunk; exactly ceil(n_rows / chunk_size) entries."""
    if chunk_size < 1:
        raise ValueError(ERR_BAD_CHUNK_SIZE.format(chunk_size))
    n_chunks = -(-n_rows // chunk_size)
    return [(i * chunk_size, min((i + 1) * chunk_size, n_rows)) for i in range(n_chunks)]


def _write_manifest_line(fp: Any, record: dict[str, Any]) -> None:
    fp.write(json.dumps(record, sort_keys=True) + "\n")
    fp.flush()


def upload(
    client: DatasetClient,
    dataset_name: str,
    rows: Sequence[tuple[datetime, float]],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    *,
    target_column: str = "value",
    fail_fast: bool = False,
    manifest_path: Path | None = None,
) -> list[ChunkResult]:
    """Submit ``rows`` to ``dataset_name`` chunk by chunk, strictly sequentially.

    Args:
        client: Anything exposing ``create_dataset(name, rows, target_column)``
        dataset_name: Remote dataset every chunk is appended to
        rows: (timestamp, value) pairs, already in the order to send
        chunk_size: Maximum rows per request
        target_column: Column name the values are sent under
        fail_fast: Stop after the first failed chunk
        manifest_path: Optional JSONL file (overwritten) with one record per chunk

    Returns:
        One ChunkResult per attempted chunk, in submission order.
    """
    bounds = chunk_bounds(len(rows), chunk_size)
    logger.info(
        "Uploading %s rows to dataset %r in %d chunk(s) of up to %s",
        f"{len(rows):,}",
        dataset_name,
        len(bounds),
        f"{chunk_size:,}",
    )

    mf = None
    if manifest_path is not None:
        manifest_path.parent.mkdir(parents=True, exist_ok=True)
        mf = manifest_path.open("w", encoding="utf-8")

    results: list[ChunkResult] = []
    try:
        for i, (lo, hi) in enumerate(bounds):
            chunk = rows[lo:hi]
            try:
                body = client.create_dataset(dataset_name, chunk, target_column=target_column)
            except ApiError as exc:
                result = ChunkResult(
                    index=i,
                    start=lo,
                    rows=len(chunk),
                    status="error",
                    timestamp=_utc_now_iso(),
                    error=f"{type(exc).__name__}: {exc}",
                )
                logger.warning("Chunk %d/%d (%d rows) failed: %s", i + 1, len(bounds), len(chunk), exc)
            else:
                result = ChunkResult(
                    index=i,
                    start=lo,
                    rows=len(chunk),
                    status="success",
                    timestamp=_utc_now_iso(),
                    confirmation=body if isinstance(body, dict) else None,
                )
                logger.debug("Chunk %d/%d confirmed (%d rows)", i + 1, len(bounds), len(chunk))

            results.append(result)
            if mf is not None:
                _write_manifest_line(mf, {"dataset": dataset_name, **asdict(result)})

            if not result.ok and fail_fast:
                logger.error("Stopping upload after failed chunk %d (fail_fast)", i + 1)
                break
    finally:
        if mf is not None:
            mf.close()

    confirmed = sum(r.rows for r in results if r.ok)
    failed = sum(1 for r in results if not r.ok)
    logger.info("Upload finished. Confirmed rows=%s Failed chunks=%d", f"{confirmed:,}", failed)
    return results
