"""Processing history kept independently of checkpoints."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from pathlib import Path
from shutil import copy2
from typing import Any

from pydantic import ValidationError

from harvester.json_store import read_json, write_json_atomic
from harvester.schema import (
    CumulativeStats,
    InvalidTransitionError,
    ProcessingSession,
    SessionStatus,
    check_transition,
    utc_now,
)

logger = logging.getLogger(__name__)

HISTORY_FILENAME = "processing_history.json"
MAX_SESSIONS = 100


class SessionStore:
    """JSON history of sessions, newest first, capped at ``max_sessions``.

    The previous file is copied to ``<name>.backup`` before every write and
    read back when the main file is corrupted.
    """

    def __init__(self, path: Path | str, max_sessions: int = MAX_SESSIONS) -> None:
        self.path = Path(path)
        self.backup_path = self.path.with_name(f"{self.path.name}.backup")
        self.max_sessions = max_sessions
        self._lock = threading.Lock()

    def _read_sessions(self) -> list[ProcessingSession]:
        for candidate in (self.path, self.backup_path):
            if not candidate.exists():
                continue
            try:
                data = read_json(candidate)
                return [
                    ProcessingSession.model_validate(item)
                    for item in data.get("sessions", [])
                ]
            except (
                OSError,
                AttributeError,
                json.JSONDecodeError,
                ValidationError,
            ) as exc:
                logger.error("Session history %s is unreadable: %s", candidate, exc)
                continue
        return []

    def _write_sessions(self, sessions: list[ProcessingSession]) -> None:
        if self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            copy2(self.path, self.backup_path)
        write_json_atomic(
            self.path,
            {"sessions": [session.model_dump(mode="json") for session in sessions]},
        )

    def create(self, session: ProcessingSession) -> ProcessingSession:
        with self._lock:
            sessions = [
                item for item in self._read_sessions() if item.id != session.id
            ]
            sessions.insert(0, session)
            self._write_sessions(sessions[: self.max_sessions])
        return session

    def update(
        self, session_id: str, changes: Mapping[str, Any]
    ) -> ProcessingSession | None:
        """Apply ``changes`` to one entry.

        Status changes must follow the session lifecycle and progress
        counters may not go backwards; either violation raises
        :class:`InvalidTransitionError` and leaves the history untouched.
        """
        with self._lock:
            sessions = self._read_sessions()
            for index, session in enumerate(sessions):
                if session.id != session_id:
                    continue
                _check_changes(session, changes)
                merged = session.model_dump()
                merged.update(changes)
                merged["updated_at"] = utc_now()
                updated = ProcessingSession.model_validate(merged)
                sessions[index] = updated
                self._write_sessions(sessions)
                return updated
        logger.warning("Session %s not found in history", session_id)
        return None

    def get(self, session_id: str) -> ProcessingSession | None:
        with self._lock:
            for session in self._read_sessions():
                if session.id == session_id:
                    return session
        return None

    def list(self) -> list[ProcessingSession]:
        with self._lock:
            return self._read_sessions()

    def delete(self, session_id: str) -> bool:
        with self._lock:
            sessions = self._read_sessions()
            remaining = [session for session in sessions if session.id != session_id]
            if len(remaining) == len(sessions):
                return False
            self._write_sessions(remaining)
        return True

    def clear(self) -> None:
        with self._lock:
            self._write_sessions([])


def _check_changes(session: ProcessingSession, changes: Mapping[str, Any]) -> None:
    if "status" in changes:
        check_transition(session.status, SessionStatus(changes["status"]))
    if "progress" in changes:
        progress = CumulativeStats.model_validate(changes["progress"])
        if not progress.dominates(session.progress):
            raise InvalidTransitionError(
                f"Progress for {session.id} cannot decrease"
            )
