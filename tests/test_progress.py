import logging
import threading

import pytest

from harvester.progress import ProgressReporter, build_progress_payload
from harvester.schema import CumulativeStats, EventType


def test_progress_payload():
    stats = CumulativeStats(processed=100, successful=90, errored=4, filtered=6)

    payload = build_progress_payload(
        stats, 237, current_chunk=2, total_chunks=3, session_id="s1"
    )

    assert payload["processed"] == 100
    assert payload["total"] == 237
    assert payload["errors"] == 4
    assert payload["percentage"] == 42.2
    assert payload["current_chunk"] == 2
    assert payload["session_id"] == "s1"
    assert build_progress_payload(stats, 0, current_chunk=1, total_chunks=0)[
        "percentage"
    ] == 0.0


def test_stream_stops_after_terminal_event():
    reporter = ProgressReporter()

    def produce():
        reporter.log("scanning")
        reporter.emit(EventType.PROGRESS, {"processed": 1})
        reporter.emit("complete", {"session_id": "s1"})
        reporter.log("after the end")

    thread = threading.Thread(target=produce)
    thread.start()
    events = list(reporter.stream(timeout=5))
    thread.join()

    assert [event.type for event in events] == [
        EventType.LOG,
        EventType.PROGRESS,
        EventType.COMPLETE,
    ]
    assert [event.type for event in reporter.drain()] == [EventType.LOG]


def test_failing_listener_does_not_break_delivery(caplog):
    reporter = ProgressReporter()
    received = []

    def broken(event):
        raise RuntimeError("listener bug")

    reporter.subscribe(broken)
    reporter.subscribe(received.append)

    with caplog.at_level(logging.ERROR):
        reporter.emit(EventType.CHUNK, {"chunk": 1})

    assert [event.type for event in received] == [EventType.CHUNK]
    assert "Progress listener failed" in caplog.text
    assert len(reporter.drain()) == 1


def test_unbuffered_reporter_only_feeds_listeners():
    reporter = ProgressReporter(buffer=False)
    received = []
    reporter.subscribe(received.append)

    for chunk in range(1, 101):
        reporter.emit(EventType.CHUNK, {"chunk": chunk})

    assert len(received) == 100
    assert reporter.drain() == []
    with pytest.raises(RuntimeError):
        next(reporter.stream(timeout=1))
