"""Logging setup for the metadata harvester.

Everything is configured on the root logger so library modules only ever
call ``logging.getLogger(__name__)`` or :func:`get_pipeline_logger`.
Settings come from arguments first, then ``METADATA_HARVEST_LOG_*``
environment variables.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

ENV_PREFIX = "METADATA_HARVEST_LOG_"
FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s:%(lineno)d | %(message)s"
DEFAULT_LOG_FILE = "metadata_harvest.log"
PIPELINE_LOGGER_NAME = "metadata_harvest.pipeline"

# Third-party loggers and the floor they are held at.
QUIET_LOGGERS: dict[str, int] = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "PIL": logging.INFO,
}

_CONFIGURED = False


def _env(name: str, default: str | None = None) -> str | None:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _level_from(value: int | str | None) -> int | None:
    if isinstance(value, int):
        return value
    if value:
        candidate = logging.getLevelName(value.strip().upper())
        if isinstance(candidate, int):
            return candidate
    return None


def resolve_level(level: int | str | None = None) -> int:
    """Pick the explicit level, else ``METADATA_HARVEST_LOG_LEVEL``, else INFO."""
    for candidate in (level, _env("LEVEL")):
        resolved = _level_from(candidate)
        if resolved is not None:
            return resolved
    return logging.INFO


def _file_handler(log_file: str | os.PathLike[str]) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(_env("FORMAT", FILE_FORMAT)))
    return handler


def _console_handler() -> logging.Handler:
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    return handler


def configure_logging(
    level: int | str | None = None,
    *,
    log_file: str | os.PathLike[str] | None = None,
    console: bool = True,
    force: bool = False,
) -> None:
    """Install root handlers once per process.

    ``log_file=None`` means "use ``METADATA_HARVEST_LOG_FILE`` or the
    default file"; an empty string turns file logging off. Console output
    goes to stderr through rich so it does not interleave with command
    output. A second call without ``force`` only adjusts the level.
    """
    global _CONFIGURED

    resolved_level = resolve_level(level)
    root = logging.getLogger()

    if _CONFIGURED and not force:
        root.setLevel(resolved_level)
        return

    if log_file is None:
        log_file = _env("FILE", DEFAULT_LOG_FILE)

    handlers: list[logging.Handler] = []
    if log_file:
        handlers.append(_file_handler(log_file))
    if console:
        handlers.append(_console_handler())
    if not handlers:
        raise ValueError("configure_logging requires at least one handler")

    for existing in list(root.handlers):
        root.removeHandler(existing)
        existing.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(resolved_level)

    for name, floor in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(floor)

    _CONFIGURED = True


def get_pipeline_logger(component: str | None = None) -> logging.Logger:
    """Return the pipeline logger or one of its named children."""
    if not component:
        return logging.getLogger(PIPELINE_LOGGER_NAME)
    return logging.getLogger(f"{PIPELINE_LOGGER_NAME}.{component}")


__all__ = ["configure_logging", "get_pipeline_logger", "resolve_level"]
