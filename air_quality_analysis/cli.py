#!/usr/bin/env python3
"""
Command-line entry point for the air quality pipeline.

Usage:
    air-quality import "data/raw/Beijing_*_HourlyPM25.csv"
    air-quality preprocess
    air-quality aggregate
    air-quality upload --dataset beijing-pm25
    air-quality forecast --start 2017-07-01T00:00 --end 2017-07-05T00:00
    air-quality analyze --event "holiday" --start 2017-01-27T00:00 --end 2017-02-02T00:00
    air-quality results 015e0f9a-bd2c-4b43-b5ab-48a9a3e8f5a2
    air-quality list sessions

The database path, dataset name and API credentials come from
config/air_quality.yaml (or --config), with AIR_QUALITY_API_KEY as the
conventional credential source. Timestamps without an offset are read as
local standard time (+08:00).
"""

from __future__ import annotations

import argparse
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.table import Table

from air_quality_analysis.aggregate import aggregate_daily, measurements_frame
from air_quality_analysis.client import ApiClient
from air_quality_analysis.config import AppConfig, load_app_config
from air_quality_analysis.ingest import expand_file_pattern, import_files
from air_quality_analysis.reconstruct import IMPUTATION_STRATEGIES, Reconstructor, make_strategy
from air_quality_analysis.sessions import SessionManager
from air_quality_analysis.store import GRANULARITIES, SOURCES, MeasurementStore
from air_quality_analysis.timeutil import parse_timestamp
from air_quality_analysis.upload import upload
from air_quality_analysis.validation import SeriesValidator

logger = logging.getLogger(__name__)

console = Console()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


class UsageError(ValueError):
    """Operator input that is rejected before any side effect."""


def _timestamp_arg(value: str) -> datetime:
    try:
        return parse_timestamp(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _positive_int(value: str) -> int:
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {n}")
    return n


def _add_range_args(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("-s", "--start", type=_timestamp_arg, required=required, help="Start timestamp (ISO 8601)")
    parser.add_argument("-e", "--end", type=_timestamp_arg, required=required, help="End timestamp (ISO 8601)")


def _add_session_args(parser: argparse.ArgumentParser) -> None:
    _add_range_args(parser, required=True)
    parser.add_argument("--dataset", default=None, help="Remote dataset name (default: from config)")
    parser.add_argument("--target", default=None, help="Target column (default: from config)")
    parser.add_argument("--name", default=None, help="Human-readable session name")
    parser.add_argument("--interval", default="hour", choices=["hour", "day"], help="Result granularity")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="air-quality",
        description="Manage data analysis for hourly air quality readings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to config file")
    parser.add_argument("-d", "--database", type=Path, default=None, help="SQLite database path")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import", help="Import raw CSV files into staging (replaces previous staging)")
    p.add_argument("pattern", help="File path or glob, e.g. data/raw/*.csv")

    p = sub.add_parser("preprocess", help="Rebuild the continuous hourly series from staging")
    p.add_argument("--keep-existing", action="store_true", help="Do not clear canonical rows first")
    p.add_argument("--imputation", choices=IMPUTATION_STRATEGIES, default=None)

    sub.add_parser("aggregate", help="Write daily means of the hourly series as derived rows")

    p = sub.add_parser("upload", help="Upload the canonical series to the remote service")
    _add_range_args(p, required=False)
    p.add_argument("--dataset", default=None, help="Remote dataset name (default: from config)")
    p.add_argument("--target", default=None, help="Column the values are uploaded under (default: from config)")
    p.add_argument("--chunk-size", type=_positive_int, default=None)
    p.add_argument("--source", choices=SOURCES, default=None)
    p.add_argument("--granularity", choices=GRANULARITIES, default="hour")
    p.add_argument("--manifest", type=Path, default=None, help="Write a JSONL record per chunk")
    p.add_argument("--fail-fast", action="store_true", help="Stop after the first failed chunk")

    p = sub.add_parser("forecast", help="Request a forecast for the given range")
    _add_session_args(p)

    p = sub.add_parser("analyze", aliases=["impact"], help="Request impact analysis of an event")
    p.add_argument("--event", required=True, help="Event name")
    _add_session_args(p)

    p = sub.add_parser("results", help="Fetch and store results for a session")
    p.add_argument("session_id")
    p.add_argument("--target", default=None, help="Column the result values are read from (default: from config)")

    p = sub.add_parser("list", help="List datasets, sessions, measurements or results")
    p.add_argument("what", choices=["datasets", "sessions", "measurements", "results"])
    _add_range_args(p, required=False)
    p.add_argument("--source", choices=SOURCES, default=None)
    p.add_argument("--granularity", choices=GRANULARITIES, default="hour")
    p.add_argument("--session-id", default=None)
    p.add_argument("--remote", action="store_true", help="List sessions from the remote service")

    return parser


def _check_range(start: datetime | None, end: datetime | None) -> None:
    if start is not None and end is not None and start >= end:
        raise UsageError(f"--start must be before --end (got {start.isoformat()} .. {end.isoformat()})")


def _client(config: AppConfig) -> ApiClient:
    try:
        api_key = config.require_api_key()
    except ValueError as exc:
        raise UsageError(str(exc)) from exc
    return ApiClient(config.api_base_url, api_key)


# =============================================================================
# Commands
# =============================================================================


def cmd_import(args: argparse.Namespace, config: AppConfig) -> int:
    paths = expand_file_pattern(args.pattern)
    if not paths:
        raise UsageError(f"No files match {args.pattern}")

    logger.info("Importing data into %s...", config.database)
    with MeasurementStore(config.database) as store:
        summary = import_files(store, paths)
    logger.info(
        "...complete. %d file(s), %s readings (%s valid, %s invalid)",
        summary.files,
        f"{summary.rows:,}",
        f"{summary.valid:,}",
        f"{summary.invalid:,}",
    )
    return EXIT_OK


def cmd_preprocess(args: argparse.Namespace, config: AppConfig) -> int:
    strategy = make_strategy(args.imputation or config.imputation, config.placeholder_value)
    logger.info("Ensuring continuous data...")
    with MeasurementStore(config.database) as store:
        summary = Reconstructor(store, strategy).run(clear=not args.keep_existing)
        validator = SeriesValidator()
        validator.checkpoint("hourly series", measurements_frame(store.measurement_rows(granularity="hour")))
    logger.info(
        "...complete. %s sensor rows, %s imputed rows in %d run(s)",
        f"{summary.sensor_rows:,}",
        f"{summary.imputed_rows:,}",
        summary.runs,
    )
    return EXIT_OK


def cmd_aggregate(args: argparse.Namespace, config: AppConfig) -> int:
    with MeasurementStore(config.database) as store:
        aggregate_daily(store)
    return EXIT_OK


def cmd_upload(args: argparse.Namespace, config: AppConfig) -> int:
    _check_range(args.start, args.end)
    client = _client(config)
    dataset = args.dataset or config.dataset_name
    with MeasurementStore(config.database) as store:
        rows = store.query_measurements(args.start, args.end, args.source, args.granularity)
    if not rows:
        logger.warning("No measurements match the filter; nothing to upload")
        return EXIT_OK

    results = upload(
        client,
        dataset,
        rows,
        args.chunk_size or config.chunk_size,
        target_column=args.target or config.target_column,
        fail_fast=args.fail_fast,
        manifest_path=args.manifest,
    )
    failed = [r for r in results if not r.ok]
    for r in failed:
        logger.error("Chunk %d (rows %d..%d) failed: %s", r.index + 1, r.start, r.start + r.rows - 1, r.error)
    return EXIT_FAILED if failed else EXIT_OK


def cmd_forecast(args: argparse.Namespace, config: AppConfig) -> int:
    _check_range(args.start, args.end)
    client = _client(config)
    with MeasurementStore(config.database) as store:
        session = SessionManager(store, client).submit_forecast(
            args.dataset or config.dataset_name,
            args.target or config.target_column,
            args.start,
            args.end,
            name=args.name,
            result_interval=args.interval,
        )
    console.print(f"Forecast session [bold]{session.session_id}[/bold] submitted ({session.name})")
    return EXIT_OK


def cmd_analyze(args: argparse.Namespace, config: AppConfig) -> int:
    _check_range(args.start, args.end)
    client = _client(config)
    with MeasurementStore(config.database) as store:
        session = SessionManager(store, client).submit_impact(
            args.dataset or config.dataset_name,
            args.event,
            args.target or config.target_column,
            args.start,
            args.end,
            name=args.name,
            result_interval=args.interval,
        )
    console.print(f"Impact session [bold]{session.session_id}[/bold] submitted ({session.name})")
    return EXIT_OK


def cmd_results(args: argparse.Namespace, config: AppConfig) -> int:
    client = _client(config)
    with MeasurementStore(config.database) as store:
        outcome = SessionManager(store, client, target_column=config.target_column).fetch_results(
            args.session_id, args.target
        )
    if outcome.written:
        console.print(f"Session {outcome.session_id}: stored {outcome.stored_rows:,} result rows")
    else:
        console.print(f"Session {outcome.session_id} is {outcome.status}; nothing stored")
    return EXIT_OK


def _print_table(title: str, columns: list[str], rows: list[list[str]]) -> None:
    table = Table(title=title)
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*row)
    console.print(table)


def cmd_list(args: argparse.Namespace, config: AppConfig) -> int:
    _check_range(args.start, args.end)

    if args.what == "datasets":
        items = _client(config).list_datasets()
        _print_table("Datasets", ["name"], [[str(i.get("dataSetName", i.get("name", "")))] for i in items])
        return EXIT_OK

    if args.what == "sessions" and args.remote:
        items = _client(config).list_sessions()
        _print_table(
            "Remote sessions",
            ["session id", "type", "status", "requested"],
            [
                [str(i.get("sessionId", "")), str(i.get("type", "")), str(i.get("status", "")), str(i.get("requestedDate", ""))]
                for i in items
            ],
        )
        return EXIT_OK

    with MeasurementStore(config.database) as store:
        if args.what == "sessions":
            _print_table(
                "Sessions",
                ["session id", "name", "requested", "results"],
                [
                    [s.session_id, s.name, s.requested_at.isoformat(), "yes" if s.metadata is not None else "pending"]
                    for s in store.list_sessions()
                ],
            )
        elif args.what == "results":
            if not args.session_id:
                raise UsageError("list results requires --session-id")
            _print_table(
                f"Results for {args.session_id}",
                ["timestamp", "value"],
                [[r.timestamp.isoformat(), f"{r.value:g}"] for r in store.session_results(args.session_id)],
            )
        else:
            _print_table(
                f"Measurements ({args.granularity})",
                ["timestamp", "value", "source"],
                [
                    [m.timestamp.isoformat(), f"{m.value:g}", m.source]
                    for m in store.measurement_rows(args.start, args.end, args.source, args.granularity)
                ],
            )
    return EXIT_OK


COMMANDS: dict[str, Callable[[argparse.Namespace, AppConfig], int]] = {
    "import": cmd_import,
    "preprocess": cmd_preprocess,
    "aggregate": cmd_aggregate,
    "upload": cmd_upload,
    "forecast": cmd_forecast,
    "analyze": cmd_analyze,
    "impact": cmd_analyze,
    "results": cmd_results,
    "list": cmd_list,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_app_config(args.config, database=args.database, log_level=args.log_level)
    except (FileNotFoundError, ValueError) as e:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
        logger.error("Invalid configuration: %s", e)
        return EXIT_USAGE

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        return COMMANDS[args.command](args, config)
    except UsageError as e:
        logger.error("%s", e)
        return EXIT_USAGE
    except Exception as e:
        logger.error("Command %r failed: %s", args.command, e, exc_info=True)
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
