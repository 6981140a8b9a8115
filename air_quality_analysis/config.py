"""
Configuration loader for air quality pipeline runs.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, cast

import yaml

from air_quality_analysis.client import DEFAULT_BASE_URL
from air_quality_analysis.reconstruct import IMPUTATION_STRATEGIES, PLACEHOLDER_VALUE
from air_quality_analysis.upload import DEFAULT_CHUNK_SIZE

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "air_quality.yaml"
API_KEY_ENV = "AIR_QUALITY_API_KEY"

ERR_NO_API_KEY = f"No API key configured; set {API_KEY_ENV} or api_key in the config file"
ERR_BAD_VALUE = "Config key {!r} must be {}; got: {!r}"

_TEXT_KEYS = {"database", "api_base_url", "dataset_name", "target_column", "imputation", "log_level"}


@dataclass(frozen=True)
class AppConfig:
    """Settings threaded explicitly into each component."""

    database: Path = Path("data/air_quality.db")
    api_base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None
    dataset_name: str = "air-quality"
    target_column: str = "value"
    chunk_size: int = DEFAULT_CHUNK_SIZE
    placeholder_value: float = PLACEHOLDER_VALUE
    imputation: str = "constant"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")
        if self.imputation not in IMPUTATION_STRATEGIES:
            raise ValueError(f"imputation must be one of {IMPUTATION_STRATEGIES}, got {self.imputation!r}")

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> AppConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")

        values = dict(data)
        for key in _TEXT_KEYS & set(values):
            if not isinstance(values[key], str) or not values[key]:
                raise ValueError(ERR_BAD_VALUE.format(key, "a non-empty string", values[key]))
        if "database" in values:
            values["database"] = Path(values["database"])
        for key, kind in (("chunk_size", int), ("placeholder_value", float)):
            if key not in values:
                continue
            if isinstance(values[key], bool):
                raise ValueError(ERR_BAD_VALUE.format(key, "a number", values[key]))
            try:
                values[key] = kind(values[key])
            except (TypeError, ValueError) as e:
                raise ValueError(ERR_BAD_VALUE.format(key, "a number", values[key])) from e
        if values.get("api_key") in ("", None) or _is_unresolved(values.get("api_key")):
            values["api_key"] = None
        return cls(**values)

    def require_api_key(self) -> str:
        if not self.api_key:
            raise ValueError(ERR_NO_API_KEY)
        return self.api_key


def load_config(config_path: Path | str | None = None) -> dict[str, Any]:
    """
    Load configuration from YAML file with environment variable substitution.

    Args:
        config_path: Path to config file. If None, uses default config/air_quality.yaml

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If the config file does not exist
        ValueError: If the YAML root is not a mapping
    """
    config_path = DEFAULT_CONFIG_PATH if config_path is None else Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        config: dict[str, Any] = {}
    elif not isinstance(data, dict):
        raise ValueError(f"Config root must be a mapping, got {type(data).__name__}")
    else:
        config = cast(dict[str, Any], data)

    return cast(dict[str, Any], _substitute_env_vars(config))


def _substitute_env_vars(obj: Any) -> Any:
    """Recursively substitute ${VAR} patterns with environment variables."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        var_name = obj[2:-1]
        return os.getenv(var_name, obj)  # fall back to original if unset
    return obj


def _is_unresolved(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("${") and value.endswith("}")


def load_app_config(config_path: Path | str | None = None, **overrides: Any) -> AppConfig:
    """
    Build the run configuration.

    A missing default config file means built-in defaults; an explicitly
    requested file must exist. Overrides that are not None win over the file.
    """
    try:
        data = load_config(config_path)
    except FileNotFoundError:
        if config_path is not None:
            raise
        data = {}

    config = AppConfig.from_mapping(data)
    if config.api_key is None and os.getenv(API_KEY_ENV):
        config = replace(config, api_key=os.getenv(API_KEY_ENV))

    applied = {k: v for k, v in overrides.items() if v is not None}
    if "database" in applied:
        applied["database"] = Path(applied["database"])
    return replace(config, **applied) if applied else config
