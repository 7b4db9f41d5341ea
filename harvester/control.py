"""File-backed pause/stop control signal."""

from __future__ import annotations

import json
import logging
import threading
from enum import Enum
from pathlib import Path

from pydantic import ValidationError

from harvester.json_store import read_json, write_json_atomic
from harvester.schema import ControlSignal

logger = logging.getLogger(__name__)

CONTROL_FILENAME = "processing_control.json"


class ControlAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    RESET = "reset"


class ControlStore:
    """Single owner of the :class:`ControlSignal`.

    The CLI (or any other control endpoint) writes through ``set_signal``;
    the chunk controller only reads through ``get_signal``. Both may live in
    different processes, so every call goes to the file.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def get_signal(self) -> ControlSignal:
        with self._lock:
            if not self.path.exists():
                return ControlSignal()
            try:
                return ControlSignal.model_validate(read_json(self.path))
            except (OSError, json.JSONDecodeError, ValidationError) as exc:
                logger.warning(
                    "Control file %s is unreadable (%s); treating as no request",
                    self.path,
                    exc,
                )
                return ControlSignal()

    def set_signal(self, action: ControlAction | str) -> ControlSignal:
        action = ControlAction(action)
        with self._lock:
            if action is ControlAction.PAUSE:
                signal = ControlSignal(is_paused=True, should_stop=False)
            elif action is ControlAction.STOP:
                signal = ControlSignal(is_paused=False, should_stop=True)
            else:
                signal = ControlSignal(is_paused=False, should_stop=False)
            write_json_atomic(self.path, signal.model_dump(mode="json"))
        logger.info("Control signal set: %s", action.value)
        return signal

    def reset(self) -> ControlSignal:
        return self.set_signal(ControlAction.RESET)


class MemoryControlStore(ControlStore):
    """In-process control store for embedding and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._signal = ControlSignal()

    def get_signal(self) -> ControlSignal:
        with self._lock:
            return self._signal.model_copy()

    def set_signal(self, action: ControlAction | str) -> ControlSignal:
        action = ControlAction(action)
        with self._lock:
            self._signal = ControlSignal(
                is_paused=action is ControlAction.PAUSE,
                should_stop=action is ControlAction.STOP,
            )
            return self._signal.model_copy()
