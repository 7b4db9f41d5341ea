"""Durable per-session checkpoints for resumable processing."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from pydantic import ValidationError

from harvester.json_store import read_json, write_json_atomic
from harvester.schema import RESUMABLE_STATUSES, Checkpoint

logger = logging.getLogger(__name__)

CHECKPOINT_DIRNAME = "checkpoints"
_SESSION_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class CheckpointError(Exception):
    """Raised when a checkpoint cannot be written or read back."""


class CheckpointNotFoundError(CheckpointError):
    """Raised when no checkpoint exists for a session."""


class CheckpointStore:
    """One JSON file per session under ``directory``.

    Each save fully replaces the previous file so a crash leaves either the
    old or the new checkpoint on disk, never a torn one.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def path_for(self, session_id: str) -> Path:
        if not _SESSION_ID.match(session_id):
            raise CheckpointError(f"Invalid session id: {session_id!r}")
        return self.directory / f"{session_id}.json"

    def save(self, checkpoint: Checkpoint) -> None:
        path = self.path_for(checkpoint.session_id)
        try:
            write_json_atomic(path, checkpoint.model_dump(mode="json"))
        except (OSError, TypeError, ValueError) as exc:
            raise CheckpointError(
                f"Failed to write checkpoint for {checkpoint.session_id}: {exc}"
            ) from exc
        logger.debug(
            "Checkpoint saved for %s at chunk %d/%d (%s)",
            checkpoint.session_id,
            checkpoint.current_chunk_index,
            checkpoint.total_chunks,
            checkpoint.status.value,
        )

    def load(self, session_id: str) -> Checkpoint:
        path = self.path_for(session_id)
        if not path.exists():
            raise CheckpointNotFoundError(f"No checkpoint found for {session_id}")
        try:
            return Checkpoint.model_validate(read_json(path))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise CheckpointError(
                f"Checkpoint for {session_id} is unreadable: {exc}"
            ) from exc

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    def delete(self, session_id: str) -> bool:
        path = self.path_for(session_id)
        if not path.exists():
            return False
        path.unlink()
        logger.debug("Checkpoint removed for %s", session_id)
        return True

    def list_sessions(self) -> list[str]:
        """Return session ids with a checkpoint, most recently saved first."""
        if not self.directory.exists():
            return []
        candidates = []
        for path in self.directory.glob("*.json"):
            try:
                candidates.append((path.stat().st_mtime, path.stem))
            except OSError:
                continue
        candidates.sort(reverse=True)
        return [session_id for _, session_id in candidates]

    def latest_resumable(self) -> Checkpoint | None:
        for session_id in self.list_sessions():
            try:
                checkpoint = self.load(session_id)
            except CheckpointError as exc:
                logger.warning("Skipping checkpoint %s: %s", session_id, exc)
                continue
            if checkpoint.status in RESUMABLE_STATUSES:
                return checkpoint
        return None
