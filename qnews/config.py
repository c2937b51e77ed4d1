from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from qnews.attention import CoefficientTable, default_coefficients, validate_coefficients
from qnews.constants import (
    ARCHIVE_AFTER_DAYS,
    ARCHIVE_BATCH_SIZE,
    ARCHIVE_WORKERS,
    DEFAULT_FATIGUE_FACTOR,
    DEFAULT_PRIOR_WEIGHT,
    FRONTPAGE_GRAVITY,
    FRONTPAGE_OVERALL_PRIOR_WEIGHT,
    FRONTPAGE_PRIOR_WEIGHT,
    HN_API_BASE,
    SQLITE_DATA_FILENAME,
)
from qnews.errors import ConfigError
from qnews.models import CategoryCoefficients, FrontPageParams, ModelParams

CONFIG_DIR = Path.home() / ".config" / "qnews"
CONFIG_FILE = CONFIG_DIR / "config.json"

LOG_LEVELS = ("DEBUG", "INFO", "WARN", "WARNING", "ERROR")

CONFIG_KEYS = (
    "fatigueFactor",
    "priorWeight",
    "frontPagePriorWeight",
    "overallPriorWeight",
    "gravity",
    "categoryCoefficients",
)


def load_config(path: Optional[Path] = None) -> dict[str, Any]:
    """Read the optional JSON config file. A missing file is an empty config."""
    config_file = path or CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Unreadable config file {config_file}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_file} must hold a JSON object")
    return data


def save_config(key: str, value: Any, path: Optional[Path] = None) -> None:
    if key not in CONFIG_KEYS:
        raise ConfigError(f"Unknown config key {key!r}; expected one of {', '.join(CONFIG_KEYS)}")
    config_file = path or CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config = load_config(config_file)
    config[key] = value
    with open(config_file, "w") as f:
        json.dump(config, f, indent=2)


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration. Built once at startup, never mutated."""

    data_dir: Path
    model_params: ModelParams
    frontpage_params: FrontPageParams
    coefficients: CoefficientTable
    log_level: str = "INFO"
    log_format: str = ""
    source_base_url: str = HN_API_BASE
    archive_dir: Optional[Path] = None
    archive_url: Optional[str] = None
    archive_token: Optional[str] = None
    archive_workers: int = ARCHIVE_WORKERS
    archive_batch_size: int = ARCHIVE_BATCH_SIZE
    archive_after_days: int = ARCHIVE_AFTER_DAYS

    @property
    def database_path(self) -> Path:
        return self.data_dir / SQLITE_DATA_FILENAME

    @property
    def archive_enabled(self) -> bool:
        return self.archive_dir is not None or self.archive_url is not None


def _positive_float(config: Mapping[str, Any], key: str, default: float) -> float:
    value = config.get(key, default)
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be a number, got {value!r}") from e
    if not number > 0:
        raise ConfigError(f"{key} must be positive, got {number}")
    return number


def _positive_int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except ValueError as e:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from e
    if number <= 0:
        raise ConfigError(f"{key} must be positive, got {number}")
    return number


def _coefficients_from_config(config: Mapping[str, Any]) -> CoefficientTable:
    rows = config.get("categoryCoefficients")
    if rows is None:
        table = default_coefficients()
    else:
        try:
            table = tuple(
                CategoryCoefficients(
                    category_coefficient=float(row["categoryCoefficient"]),
                    page_coefficient=float(row["pageCoefficient"]),
                    rank_coefficients=tuple(float(r) for r in row["rankCoefficients"]),
                )
                for row in rows
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid categoryCoefficients: {e}") from e
    validate_coefficients(table)
    return table


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    config_file: Optional[Path] = None,
) -> Settings:
    """Build Settings from environment variables and the optional JSON file."""
    env = os.environ if env is None else env

    data_dir_str = env.get("SQLITE_DATA_DIR", "")
    if not data_dir_str:
        raise ConfigError("SQLITE_DATA_DIR not set")

    log_level = env.get("LOG_LEVEL", "INFO").upper() or "INFO"
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"Unrecognized log level: {log_level}")

    if config_file is None and env.get("QNEWS_CONFIG"):
        config_file = Path(env["QNEWS_CONFIG"])
    config = load_config(config_file)

    model_params = ModelParams(
        fatigue_factor=_positive_float(config, "fatigueFactor", DEFAULT_FATIGUE_FACTOR),
        prior_weight=_positive_float(config, "priorWeight", DEFAULT_PRIOR_WEIGHT),
    )
    frontpage_params = FrontPageParams(
        prior_weight=_positive_float(config, "frontPagePriorWeight", FRONTPAGE_PRIOR_WEIGHT),
        overall_prior_weight=_positive_float(
            config, "overallPriorWeight", FRONTPAGE_OVERALL_PRIOR_WEIGHT
        ),
        gravity=_positive_float(config, "gravity", FRONTPAGE_GRAVITY),
    )

    archive_dir = env.get("ARCHIVE_DIR") or None

    return Settings(
        data_dir=Path(data_dir_str),
        model_params=model_params,
        frontpage_params=frontpage_params,
        coefficients=_coefficients_from_config(config),
        log_level=log_level,
        log_format=env.get("LOG_FORMAT", "").upper(),
        source_base_url=env.get("HN_API_BASE") or HN_API_BASE,
        archive_dir=Path(archive_dir) if archive_dir else None,
        archive_url=env.get("ARCHIVE_URL") or None,
        archive_token=env.get("ARCHIVE_TOKEN") or None,
        archive_workers=_positive_int(env, "ARCHIVE_WORKERS", ARCHIVE_WORKERS),
        archive_batch_size=_positive_int(env, "ARCHIVE_BATCH_SIZE", ARCHIVE_BATCH_SIZE),
        archive_after_days=_positive_int(env, "ARCHIVE_AFTER_DAYS", ARCHIVE_AFTER_DAYS),
    )
