# air_quality_analysis/validation.py
"""
Continuity checks on the canonical hourly series at each pipeline step.
Ensures the reconstructed series has no holes and no duplicate hours.
"""

from __future__ import annotations

import logging

import polars as pl

logger = logging.getLogger(__name__)


class SeriesValidator:
    """Track the hourly series through pipeline steps"""

    def __init__(self) -> None:
        self.checkpoints: dict[str, dict[str, object]] = {}

    def checkpoint(self, step_name: str, df: pl.DataFrame) -> dict[str, object]:
        """Validate a [timestamp, value, source] frame at a pipeline checkpoint."""
        report: dict[str, object] = {
            "step": step_name,
            "status": "PASS",
            "rows": df.height,
            "duplicates": 0,
            "missing_hours": 0,
            "issues": [],
            "warnings": [],
        }
        issues: list[str] = report["issues"]  # type: ignore[assignment]
        warnings: list[str] = report["warnings"]  # type: ignore[assignment]

        if df.height == 0:
            warnings.append("Series is empty")
        else:
            null_count = df["value"].null_count()
            if null_count > 0:
                issues.append(f"value: {null_count:,} nulls")

            n_unique = df["timestamp"].n_unique()
            duplicates = df.height - n_unique
            report["duplicates"] = duplicates
            if duplicates > 0:
                warnings.append(f"Found {duplicates:,} duplicate hourly timestamps")

            # Expected hours between first and last reading, inclusive
            span_hours = int((df["timestamp"].max() - df["timestamp"].min()).total_seconds() // 3600) + 1  # type: ignore[operator, union-attr]
            missing = span_hours - n_unique
            report["missing_hours"] = missing
            if missing > 0:
                issues.append(f"{missing:,} hour(s) missing between first and last reading")

            if "source" in df.columns:
                report["by_source"] = dict(df.group_by("source").len().sort("source").iter_rows())

        if issues:
            report["status"] = "FAIL"

        self.checkpoints[step_name] = report

        if report["status"] == "FAIL":
            logger.error("%s: FAILED validation", step_name)
            for issue in issues:
                logger.error("  - %s", issue)
        else:
            logger.info("%s: %s rows, continuous", step_name, f"{df.height:,}")

        for warning in warnings:
            logger.warning("  %s", warning)

        return report

    def summary(self) -> dict[str, dict[str, object]]:
        return dict(self.checkpoints)
