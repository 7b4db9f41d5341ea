import pytest

from harvester.schema import (
    CumulativeStats,
    InvalidTransitionError,
    ProcessingSession,
    RelocationFailure,
    SessionStatus,
)
from harvester.session_store import SessionStore


def test_create_lists_newest_first(tmp_path):
    store = SessionStore(tmp_path / "processing_history.json")
    store.create(ProcessingSession(id="first"))
    store.create(ProcessingSession(id="second"))

    assert [session.id for session in store.list()] == ["second", "first"]


def test_history_is_capped(tmp_path):
    store = SessionStore(tmp_path / "history.json", max_sessions=3)
    for index in range(5):
        store.create(ProcessingSession(id=f"s{index}"))

    assert [session.id for session in store.list()] == ["s4", "s3", "s2"]


def test_update_merges_changes(tmp_path):
    store = SessionStore(tmp_path / "history.json")
    created = store.create(ProcessingSession(id="s1", total=10))

    updated = store.update(
        "s1",
        {
            "status": SessionStatus.PAUSED,
            "progress": CumulativeStats(processed=4, successful=3, errored=1),
            "failure_preview": [RelocationFailure(reason="copy_failed")],
        },
    )

    assert updated.status is SessionStatus.PAUSED
    assert updated.total == 10
    assert updated.progress.processed == 4
    assert updated.updated_at >= created.updated_at
    assert store.get("s1").failure_preview[0].reason == "copy_failed"


def test_update_rejects_leaving_a_terminal_status(tmp_path):
    store = SessionStore(tmp_path / "history.json")
    store.create(ProcessingSession(id="s1"))
    store.update("s1", {"status": SessionStatus.COMPLETED})

    with pytest.raises(InvalidTransitionError):
        store.update("s1", {"status": SessionStatus.RUNNING})

    assert store.get("s1").status is SessionStatus.COMPLETED


def test_update_rejects_progress_going_backwards(tmp_path):
    store = SessionStore(tmp_path / "history.json")
    store.create(ProcessingSession(id="s1"))
    store.update("s1", {"progress": CumulativeStats(processed=8, successful=8)})

    with pytest.raises(InvalidTransitionError, match="cannot decrease"):
        store.update("s1", {"progress": CumulativeStats(processed=3, successful=3)})

    assert store.get("s1").progress.processed == 8


def test_update_unknown_session_returns_none(tmp_path):
    store = SessionStore(tmp_path / "history.json")
    assert store.update("missing", {"status": SessionStatus.FAILED}) is None


def test_delete_and_clear(tmp_path):
    store = SessionStore(tmp_path / "history.json")
    store.create(ProcessingSession(id="a"))
    store.create(ProcessingSession(id="b"))

    assert store.delete("a") is True
    assert store.delete("a") is False
    assert [session.id for session in store.list()] == ["b"]

    store.clear()
    assert store.list() == []


def test_backup_is_used_when_main_file_is_corrupt(tmp_path):
    path = tmp_path / "history.json"
    store = SessionStore(path)
    store.create(ProcessingSession(id="kept"))
    store.create(ProcessingSession(id="newer"))

    path.write_text("{corrupt", encoding="utf-8")

    assert [session.id for session in store.list()] == ["kept"]
    assert store.get("kept") is not None
