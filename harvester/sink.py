"""Append-only CSV output for records and relocation failures."""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

import pandas as pd

from harvester.schema import FAILURE_FIELDS, RECORD_FIELDS

logger = logging.getLogger(__name__)


class SinkError(Exception):
    """Raised when the output file cannot be written."""


class CsvSink:
    """CSV writer that emits the header once and appends rows afterwards."""

    def __init__(self, path: Path | str, fields: Sequence[str] = RECORD_FIELDS) -> None:
        self.path = Path(path)
        self.fields = list(fields)

    def has_header(self) -> bool:
        return self.path.exists() and self.path.stat().st_size > 0

    def initialize(self, schema: Sequence[str] | None = None) -> None:
        """Create the file with a header row, replacing any previous content."""
        if schema is not None:
            self.fields = list(schema)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            pd.DataFrame(columns=self.fields).to_csv(
                self.path, index=False, quoting=csv.QUOTE_ALL, encoding="utf-8"
            )
        except OSError as exc:
            raise SinkError(f"Cannot initialise output {self.path}: {exc}") from exc
        logger.info("Initialised output file %s", self.path)

    def ensure_initialized(self) -> None:
        if not self.has_header():
            self.initialize()

    def append(self, record: Mapping[str, Any]) -> None:
        self.append_many([record])

    def append_many(self, records: Iterable[Mapping[str, Any]]) -> int:
        rows = [dict(record) for record in records]
        if not rows:
            return 0
        frame = pd.DataFrame(rows, columns=self.fields)
        try:
            frame.to_csv(
                self.path,
                mode="a",
                header=False,
                index=False,
                quoting=csv.QUOTE_ALL,
                encoding="utf-8",
            )
        except OSError as exc:
            raise SinkError(f"Cannot append to {self.path}: {exc}") from exc
        return len(rows)


def failure_sink(path: Path | str) -> CsvSink:
    return CsvSink(path, FAILURE_FIELDS)
