"""Helpers for working with the project configuration file."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from harvester.schema import ProcessingConfig

CONFIG_PATH = Path("config.yaml")
DEFAULT_STATE_DIR = Path("data")
STATE_DIR_ENV = "METADATA_HARVEST_STATE_DIR"


class ConfigError(ValueError):
    """Raised when the configuration file or overrides are invalid."""


def load_config(path: Path | str = CONFIG_PATH) -> dict[str, Any]:
    """Load the YAML configuration."""
    with Path(path).open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)


def _section(config: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = config.get(key) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Configuration section '{key}' must be a mapping.")
    return dict(value)


def _load_optional_config(path: Path | str | None) -> dict[str, Any]:
    if path is None:
        path = CONFIG_PATH
        if not path.exists():
            return {}
    try:
        loaded = load_config(path)
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(
            f"Configuration file {path} is not valid YAML: {exc}"
        ) from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, Mapping):
        raise ConfigError(f"Configuration file {path} must contain a mapping.")
    return dict(loaded)


def build_processing_config(
    root: str,
    overrides: Mapping[str, Any] | None = None,
    path: Path | str | None = None,
) -> ProcessingConfig:
    """Merge YAML defaults with explicit overrides into a ProcessingConfig.

    The ``processing`` section supplies run settings and the ``filters``
    section supplies the filter criteria. Overrides whose value is ``None``
    are ignored so CLI options left unset keep the file values.
    """
    config = _load_optional_config(path)
    processing = _section(config, "processing")
    filters = _section(config, "filters")

    merged: dict[str, Any] = {**processing}
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key == "filters" and isinstance(value, Mapping):
            filters.update(value)
            continue
        merged[key] = value

    merged["root"] = root
    if filters:
        merged["filters"] = filters

    try:
        return ProcessingConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid processing configuration: {exc}") from exc


def resolve_state_dir(state_dir: Path | str | None = None) -> Path:
    """Return the directory holding checkpoints, control and session files."""
    if state_dir is not None:
        return Path(state_dir)
    env_value = os.getenv(STATE_DIR_ENV)
    if env_value:
        return Path(env_value)
    return DEFAULT_STATE_DIR
