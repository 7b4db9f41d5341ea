"""Typed progress event channel between the coordinator and its host."""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable, Iterator
from typing import Any

from harvester.logging_utils import get_pipeline_logger
from harvester.schema import CumulativeStats, EventType, ProgressEvent

progress_logger = get_pipeline_logger("progress")

Listener = Callable[[ProgressEvent], None]


def build_progress_payload(
    stats: CumulativeStats,
    total: int,
    *,
    current_chunk: int,
    total_chunks: int,
    session_id: str | None = None,
) -> dict[str, Any]:
    """Cumulative counters plus the completion percentage."""
    percentage = round(stats.processed / total * 100, 1) if total else 0.0
    payload: dict[str, Any] = {
        "processed": stats.processed,
        "total": total,
        "successful": stats.successful,
        "errors": stats.errored,
        "filtered": stats.filtered,
        "relocated": stats.relocated,
        "percentage": min(percentage, 100.0),
        "current_chunk": current_chunk,
        "total_chunks": total_chunks,
    }
    if session_id is not None:
        payload["session_id"] = session_id
    return payload


class ProgressReporter:
    """Thread-safe one-way event channel.

    Delivery is best effort: a failing listener is logged and skipped, and
    nothing here is needed to resume a session. With ``buffer=False`` events
    only go to listeners; use that when nothing will call :meth:`stream`.
    """

    def __init__(self, *, buffer: bool = True) -> None:
        self.buffer = buffer
        self._events: queue.Queue[ProgressEvent] = queue.Queue()
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def emit(self, event_type: EventType | str, payload: Any = None) -> ProgressEvent:
        event = ProgressEvent(type=EventType(event_type), payload=payload)
        progress_logger.debug("event %s: %s", event.type.value, payload)
        if self.buffer:
            self._events.put(event)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                progress_logger.exception(
                    "Progress listener failed for %s event", event.type.value
                )
        return event

    def log(self, message: str) -> ProgressEvent:
        return self.emit(EventType.LOG, {"message": message})

    def stream(self, timeout: float | None = None) -> Iterator[ProgressEvent]:
        """Yield events until (and including) the first terminal event."""
        if not self.buffer:
            raise RuntimeError("stream() needs a buffering ProgressReporter")
        while True:
            event = self._events.get(timeout=timeout)
            yield event
            if event.is_terminal:
                return

    def drain(self) -> list[ProgressEvent]:
        events: list[ProgressEvent] = []
        while True:
            try:
                events.append(self._events.get_nowait())
            except queue.Empty:
                return events
