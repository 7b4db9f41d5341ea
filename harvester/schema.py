from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ExtractedRecord: TypeAlias = dict[str, Any]

# Column order of the tabular output, shared by the NewsML extractor and the
# orphan media records.
RECORD_FIELDS: tuple[str, ...] = (
    "city",
    "year",
    "month",
    "newsItemId",
    "dateId",
    "providerId",
    "headline",
    "byline",
    "dateline",
    "creditline",
    "copyrightLine",
    "slugline",
    "keywords",
    "edition",
    "location",
    "country",
    "city_meta",
    "pageNumber",
    "status",
    "urgency",
    "language",
    "subject",
    "processed",
    "published",
    "usageType",
    "rightsHolder",
    "imageWidth",
    "imageHeight",
    "imageSize",
    "actualFileSize",
    "imageHref",
    "xmlPath",
    "imagePath",
    "imageExists",
    "haveXml",
    "creationDate",
    "revisionDate",
    "commentData",
)

FAILURE_FIELDS: tuple[str, ...] = (
    "imageHref",
    "imagePath",
    "xmlPath",
    "failureReason",
    "failureDetails",
    "filterStatus",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SourceKind(str, Enum):
    """Where a source lives."""

    LOCAL = "local"
    REMOTE = "remote"


class SourceDescriptor(BaseModel):
    """One candidate input, fixed once enumerated."""

    model_config = ConfigDict(frozen=True)

    locator: str
    kind: SourceKind = SourceKind.LOCAL


class TextOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    LIKE = "like"
    NOT_LIKE = "notLike"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    IS_BLANK = "isBlank"
    NOT_BLANK = "notBlank"


class TextPredicate(BaseModel):
    operator: TextOperator | None = None
    value: str = ""

    @field_validator("operator", mode="before")
    @classmethod
    def _blank_operator_is_none(cls, value: Any) -> Any:
        if value == "":
            return None
        return value

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)


class FolderStructure(str, Enum):
    REPLICATE = "replicate"
    FLAT = "flat"


class RelocationConfig(BaseModel):
    enabled: bool = False
    destination: str | None = None
    structure: FolderStructure = FolderStructure.REPLICATE

    @field_validator("structure", mode="before")
    @classmethod
    def _accept_single_alias(cls, value: Any) -> Any:
        # Older filter payloads call the flat layout "single".
        if isinstance(value, str) and value.lower() == "single":
            return FolderStructure.FLAT
        return value

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.destination)


# camelCase filter keys from saved filter payloads -> record field names
LEGACY_TEXT_FILTER_FIELDS: dict[str, str] = {
    "creditLine": "creditline",
    "copyright": "copyrightLine",
    "usageType": "usageType",
    "rightsHolder": "rightsHolder",
    "location": "location",
}

_LEGACY_NUMERIC_KEYS: dict[str, str] = {
    "minWidth": "min_width",
    "minHeight": "min_height",
    "minFileSize": "min_file_size",
    "maxFileSize": "max_file_size",
}


class FilterCriteria(BaseModel):
    """Predicate set gating record output and asset relocation."""

    enabled: bool = False
    min_width: int | None = Field(default=None, ge=0)
    min_height: int | None = Field(default=None, ge=0)
    min_file_size: int | None = Field(default=None, ge=0)
    max_file_size: int | None = Field(default=None, ge=0)
    text_predicates: dict[str, TextPredicate] = Field(default_factory=dict)
    allowed_file_types: list[str] = Field(default_factory=list)
    relocation: RelocationConfig = Field(default_factory=RelocationConfig)

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_layout(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        normalized = dict(data)
        for legacy_key, field_name in _LEGACY_NUMERIC_KEYS.items():
            if legacy_key in normalized:
                value = normalized.pop(legacy_key)
                # A zero or empty bound never constrained anything.
                normalized.setdefault(field_name, value or None)

        predicates = dict(normalized.get("text_predicates") or {})
        for legacy_key, field_name in LEGACY_TEXT_FILTER_FIELDS.items():
            if legacy_key in normalized and isinstance(normalized[legacy_key], dict):
                predicates.setdefault(field_name, normalized.pop(legacy_key))
        if predicates:
            normalized["text_predicates"] = predicates

        for legacy_key in ("allowedFileTypes", "fileTypes"):
            if legacy_key in normalized:
                value = normalized.pop(legacy_key)
                if value and not normalized.get("allowed_file_types"):
                    normalized["allowed_file_types"] = value

        if any(
            key in normalized
            for key in (
                "moveImages",
                "moveDestinationPath",
                "moveFolderStructureOption",
            )
        ):
            relocation = dict(normalized.get("relocation") or {})
            relocation.setdefault("enabled", bool(normalized.pop("moveImages", False)))
            destination = normalized.pop("moveDestinationPath", None)
            if destination:
                relocation.setdefault("destination", destination)
            structure = normalized.pop("moveFolderStructureOption", None)
            if structure:
                relocation.setdefault("structure", structure)
            normalized["relocation"] = relocation

        return normalized

    @field_validator("allowed_file_types", mode="before")
    @classmethod
    def _normalize_file_types(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [part for part in value.split(",")]
        return [
            str(item).strip().lstrip(".").lower() for item in value if str(item).strip()
        ]


class ProcessingConfig(BaseModel):
    """Snapshot of one run's settings, persisted inside the checkpoint."""

    root: str
    output_file: str = "image_metadata.csv"
    output_folder: str = ""
    chunk_size: int = Field(default=100, ge=1)
    pause_between_chunks: float = Field(default=1.0, ge=0)
    num_workers: int = Field(default=4, ge=1)
    task_timeout: float = Field(default=30.0, gt=0)
    progress_every: int = Field(default=25, ge=1)
    max_depth: int = Field(default=5, ge=1)
    max_remote_files: int = Field(default=10_000, ge=1)
    include_orphan_media: bool = False
    target_extensions: list[str] = Field(default_factory=lambda: [".xml"])
    filters: FilterCriteria = Field(default_factory=FilterCriteria)

    @field_validator("target_extensions", mode="before")
    @classmethod
    def _normalize_extensions(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            value = value.split(",")
        normalized = []
        for item in value or []:
            text = str(item).strip().lower()
            if not text:
                continue
            normalized.append(text if text.startswith(".") else f".{text}")
        return normalized or [".xml"]

    @property
    def is_remote(self) -> bool:
        return self.root.startswith(("http://", "https://"))

    def resolve_output_path(self, base_dir: Path | None = None) -> Path:
        base = Path.cwd() if base_dir is None else base_dir
        if self.output_folder:
            folder = Path(self.output_folder).expanduser()
            if not folder.is_absolute():
                folder = base / folder
            return (folder / self.output_file).resolve()
        return (base / self.output_file).resolve()

    def resolve_failure_output_path(self, base_dir: Path | None = None) -> Path:
        output_path = self.resolve_output_path(base_dir)
        suffix = output_path.suffix or ".csv"
        return output_path.with_name(f"{output_path.stem}_move_failures{suffix}")


class ControlSignal(BaseModel):
    is_paused: bool = False
    should_stop: bool = False
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def requested(self) -> bool:
        return self.is_paused or self.should_stop


class CumulativeStats(BaseModel):
    """Counters for one session; never decrease while the session lives."""

    processed: int = 0
    successful: int = 0
    errored: int = 0
    filtered: int = 0
    relocated: int = 0
    relocation_failures: int = 0
    records_written: int = 0
    orphan_considered: int = 0
    orphan_recorded: int = 0
    orphan_filtered: int = 0
    orphan_relocated: int = 0

    def merged(self, delta: CumulativeStats) -> CumulativeStats:
        values = {
            name: getattr(self, name) + max(getattr(delta, name), 0)
            for name in type(self).model_fields
        }
        return type(self)(**values)

    def dominates(self, earlier: CumulativeStats) -> bool:
        return all(
            getattr(self, name) >= getattr(earlier, name)
            for name in type(self).model_fields
        )


class SessionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.RUNNING: frozenset(
        {
            SessionStatus.PAUSED,
            SessionStatus.INTERRUPTED,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
        }
    ),
    SessionStatus.PAUSED: frozenset({SessionStatus.RUNNING, SessionStatus.INTERRUPTED}),
    SessionStatus.INTERRUPTED: frozenset({SessionStatus.RUNNING}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
}

RESUMABLE_STATUSES = frozenset(
    {SessionStatus.RUNNING, SessionStatus.PAUSED, SessionStatus.INTERRUPTED}
)


class InvalidTransitionError(ValueError):
    """A status change or counter update the session lifecycle forbids."""


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Raise unless ``target`` is ``current`` or a permitted next status."""
    if current is not target and not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move a {current.value} session to {target.value}"
        )


def chunk_bounds(index: int, total_items: int, chunk_size: int) -> tuple[int, int]:
    """Return the [start, end) slice of chunk ``index``."""
    start = index * chunk_size
    return start, min(start + chunk_size, total_items)


def count_chunks(total_items: int, chunk_size: int) -> int:
    return math.ceil(total_items / chunk_size) if total_items else 0


class Checkpoint(BaseModel):
    """Durable resumable position of one session."""

    session_id: str
    status: SessionStatus = SessionStatus.RUNNING
    config: ProcessingConfig
    sources: list[SourceDescriptor]
    current_chunk_index: int = Field(default=0, ge=0)
    total_chunks: int = Field(ge=0)
    chunk_size: int = Field(ge=1)
    stats: CumulativeStats = Field(default_factory=CumulativeStats)
    output_path: str
    failure_output_path: str = ""
    started_at: datetime = Field(default_factory=utc_now)
    paused_at: datetime | None = None
    media_files: list[str] = Field(default_factory=list)
    media_counts_by_extension: dict[str, int] = Field(default_factory=dict)
    matched_assets: list[str] = Field(default_factory=list)
    scan_warnings: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_chunk_layout(self) -> Checkpoint:
        expected = count_chunks(len(self.sources), self.chunk_size)
        if self.total_chunks != expected:
            raise ValueError(
                f"total_chunks={self.total_chunks} does not match "
                f"{len(self.sources)} sources in chunks of {self.chunk_size}"
            )
        if self.current_chunk_index > self.total_chunks:
            raise ValueError("current_chunk_index is past the last chunk")
        return self

    def chunk_bounds(self, index: int) -> tuple[int, int]:
        return chunk_bounds(index, len(self.sources), self.chunk_size)

    def chunk(self, index: int) -> list[SourceDescriptor]:
        start, end = self.chunk_bounds(index)
        return self.sources[start:end]

    @property
    def is_finished(self) -> bool:
        return self.current_chunk_index >= self.total_chunks

    def with_status(self, status: SessionStatus, **updates: Any) -> Checkpoint:
        check_transition(self.status, status)
        return self.model_copy(update={"status": status, **updates})


class ErrorKind(str, Enum):
    EXTRACTION = "extraction_error"
    TIMEOUT = "timeout"
    NO_RECORD = "no_record"
    UNEXPECTED = "unexpected_error"


class RelocationFailure(BaseModel):
    image_href: str = ""
    image_path: str = ""
    xml_path: str = ""
    reason: str
    details: str = ""
    filter_status: str = "passed"

    def as_row(self) -> dict[str, str]:
        return {
            "imageHref": self.image_href,
            "imagePath": self.image_path,
            "xmlPath": self.xml_path,
            "failureReason": self.reason,
            "failureDetails": self.details,
            "filterStatus": self.filter_status,
        }


class TaskResult(BaseModel):
    """Outcome of one source inside the worker pool."""

    locator: str
    record: ExtractedRecord | None = None
    passed_filter: bool = False
    relocated: bool = False
    error: ErrorKind | None = None
    error_message: str | None = None
    relocation_failure: RelocationFailure | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.passed_filter

    @property
    def filtered_out(self) -> bool:
        return self.error is None and not self.passed_filter


class ProcessingSession(BaseModel):
    """Externally visible history entry for one session."""

    id: str
    status: SessionStatus = SessionStatus.RUNNING
    config: ProcessingConfig | None = None
    total: int = 0
    progress: CumulativeStats = Field(default_factory=CumulativeStats)
    current_chunk: int = 0
    total_chunks: int = 0
    output_path: str = ""
    failure_output_path: str = ""
    failure_preview: list[RelocationFailure] = Field(default_factory=list)
    error_message: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    ended_at: datetime | None = None


class EventType(str, Enum):
    START = "start"
    LOG = "log"
    PROGRESS = "progress"
    CHUNK = "chunk"
    PAUSED = "paused"
    SHUTDOWN = "shutdown"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_EVENTS = frozenset(
    {EventType.PAUSED, EventType.SHUTDOWN, EventType.COMPLETE, EventType.ERROR}
)


class ProgressEvent(BaseModel):
    type: EventType
    payload: Any = None
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS
