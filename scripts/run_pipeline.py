#!/usr/bin/env python3
"""
Run the local pipeline end to end for one batch of raw files.

Usage:
    python scripts/run_pipeline.py --input "data/raw/Beijing_*_HourlyPM25.csv"
    python scripts/run_pipeline.py --input "data/raw/*.csv" --aggregate --upload
    python scripts/run_pipeline.py --input "data/raw/*.csv" --config config/custom.yaml

The script:
1. Loads configuration from config/air_quality.yaml (or custom config)
2. Imports the raw files into staging (replacing previous staging)
3. Rebuilds the continuous hourly series
4. Optionally writes daily means and uploads the hourly series
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from pathlib import Path

from air_quality_analysis.aggregate import aggregate_daily, measurements_frame
from air_quality_analysis.client import ApiClient
from air_quality_analysis.config import AppConfig, load_app_config
from air_quality_analysis.ingest import expand_file_pattern, import_files
from air_quality_analysis.reconstruct import Reconstructor, make_strategy
from air_quality_analysis.store import MeasurementStore
from air_quality_analysis.upload import upload
from air_quality_analysis.validation import SeriesValidator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineArgs:
    """Parsed CLI arguments for the pipeline run."""

    input: str
    config: Path | None
    database: Path | None
    aggregate: bool
    upload: bool


def _parse_args(argv: list[str] | None = None) -> PipelineArgs:
    parser = argparse.ArgumentParser(
        description="Import, repair and (optionally) upload hourly air quality data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--input", required=True, help="Raw CSV path or glob")
    parser.add_argument("--config", type=Path, default=None, help="Path to config file")
    parser.add_argument("--database", type=Path, default=None, help="SQLite database path")
    parser.add_argument("--aggregate", action="store_true", help="Write daily means after preprocessing")
    parser.add_argument("--upload", action="store_true", help="Upload the hourly series when done")

    ns = parser.parse_args(argv)
    return PipelineArgs(
        input=ns.input,
        config=ns.config,
        database=ns.database,
        aggregate=ns.aggregate,
        upload=ns.upload,
    )


def _step(n: int, title: str) -> None:
    logger.info("")
    logger.info("=" * 70)
    logger.info("STEP %d: %s", n, title)
    logger.info("=" * 70)


def run(config: AppConfig, paths: list[Path], *, aggregate: bool, do_upload: bool) -> int:
    with MeasurementStore(config.database) as store:
        _step(1, "IMPORTING RAW FILES")
        summary = import_files(store, paths)
        logger.info("✓ %s readings staged (%s invalid)", f"{summary.rows:,}", f"{summary.invalid:,}")

        _step(2, "REBUILDING CONTINUOUS HOURLY SERIES")
        strategy = make_strategy(config.imputation, config.placeholder_value)
        result = Reconstructor(store, strategy).run()
        logger.info("✓ %s sensor + %s imputed rows", f"{result.sensor_rows:,}", f"{result.imputed_rows:,}")

        report = SeriesValidator().checkpoint("hourly series", measurements_frame(store.measurement_rows()))

        if aggregate:
            _step(3, "DAILY MEANS")
            aggregate_daily(store)

        rows = store.query_measurements() if do_upload else []

    if do_upload:
        _step(4, "UPLOADING")
        client = ApiClient(config.api_base_url, config.require_api_key())
        results = upload(client, config.dataset_name, rows, config.chunk_size, target_column=config.target_column)
        if any(not r.ok for r in results):
            logger.error("Upload finished with failed chunks")
            return 1

    logger.info("")
    logger.info("=" * 70)
    logger.info("PIPELINE COMPLETE (%s)", report["status"])
    logger.info("=" * 70)
    logger.info("Database: %s", config.database)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the pipeline run."""
    args = _parse_args(argv)

    try:
        config = load_app_config(args.config, database=args.database)
    except (FileNotFoundError, ValueError) as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    paths = expand_file_pattern(args.input)
    if not paths:
        logger.error("No input files match: %s", args.input)
        return 1

    if args.upload and not config.api_key:
        logger.error("--upload requires an API key (AIR_QUALITY_API_KEY)")
        return 1

    try:
        return run(config, paths, aggregate=args.aggregate, do_upload=args.upload)
    except Exception as e:
        logger.error("Pipeline failed: %s", e, exc_info=True)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
