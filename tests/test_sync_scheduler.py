import os
import threading

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

from notebridge.errors import RemoteTransportError
from notebridge.models import NoteState, SyncRecord
from notebridge.services import index_pool, sync_ledger, sync_scheduler


@pytest.fixture
def two_owners(server_db):
    index_pool.seed_slots(
        [
            {"external_index_id": "idx-a", "category_id": "cat-a"},
            {"external_index_id": "idx-b", "category_id": "cat-b"},
        ]
    )
    index_pool.assign_slot("alice")
    index_pool.assign_slot("bob")


def test_sync_all_twice_uploads_once(two_owners, make_note, fake_kb):
    make_note("alice", title="a1")
    make_note("alice", title="a2")
    make_note("bob", title="b1")

    first = sync_scheduler.sync_all()
    second = sync_scheduler.sync_all()

    assert first["status"] == "completed"
    assert (first["succeeded"], first["failed"], first["skipped"]) == (3, 0, 0)
    assert (second["succeeded"], second["failed"], second["skipped"]) == (0, 0, 3)
    assert len(fake_kb.ingested) == 3


def test_rerun_only_retries_failed_notes(two_owners, make_note, fake_kb):
    first_id = make_note("alice", title="a1")
    second_id = make_note("alice", title="a2")
    fake_kb.fail("register_file", RemoteTransportError("AddFile: HTTP 503", status_code=503), times=1)

    first = sync_scheduler.sync_all()
    assert (first["succeeded"], first["failed"]) == (1, 1)
    assert sync_ledger.is_synced(first_id) is False
    assert sync_ledger.is_synced(second_id) is True

    second = sync_scheduler.sync_all()
    assert (second["succeeded"], second["failed"], second["skipped"]) == (1, 0, 1)
    assert sync_ledger.is_synced(first_id) is True


def test_deleted_notes_are_ignored(two_owners, make_note, fake_kb):
    make_note("alice", title="gone", state=NoteState.DELETED)

    result = sync_scheduler.sync_all()

    assert (result["succeeded"], result["failed"], result["skipped"]) == (0, 0, 0)
    assert fake_kb.calls == []


def test_disabled_sync_is_a_no_op(two_owners, make_note, fake_kb, monkeypatch):
    make_note("alice")
    monkeypatch.setattr("notebridge.config.SYNC_ENABLED", False)

    assert sync_scheduler.sync_all() == {"status": "skipped"}
    assert sync_scheduler.sync_for_owner("alice") == 0
    assert sync_scheduler.force_sync_for_owner("alice") == 0
    assert fake_kb.calls == []


def test_sync_for_owner_only_touches_that_owner(two_owners, make_note, fake_kb):
    make_note("alice")
    bob_note = make_note("bob")

    assert sync_scheduler.sync_for_owner("alice") == 1
    assert sync_scheduler.sync_for_owner("alice") == 0
    assert sync_ledger.is_synced(bob_note) is False
    assert fake_kb.ingested == [("idx-a", ["file-1"])]


def test_force_sync_ignores_ledger(two_owners, make_note, fake_kb, db_session):
    note_id = make_note("alice")
    sync_scheduler.sync_for_owner("alice")

    assert sync_scheduler.force_sync_for_owner("alice") == 1
    assert db_session.query(SyncRecord).filter_by(note_id=note_id).count() == 2
    assert len(fake_kb.ingested) == 2


def test_pre_set_cancel_stops_before_any_upload(two_owners, make_note, fake_kb, db_session):
    make_note("alice")
    cancel = threading.Event()
    cancel.set()

    result = sync_scheduler.sync_all(cancel)

    assert result["cancelled"] is True
    assert result["status"] == "cancelled"
    assert result["succeeded"] == 0
    assert db_session.query(SyncRecord).count() == 0
    assert fake_kb.calls == []


def test_cancel_mid_run_keeps_finished_records(two_owners, make_note, fake_kb):
    first_id = make_note("alice", title="first")
    second_id = make_note("alice", title="second")
    cancel = threading.Event()
    fake_kb.after_call = lambda action: cancel.set() if action == "submit_index_ingestion" else None

    result = sync_scheduler.sync_all(cancel)

    assert result["cancelled"] is True
    assert result["succeeded"] == 1
    assert sync_ledger.is_synced(first_id) is True
    assert sync_ledger.latest_for_note(second_id) is None


def test_update_synced_replaces_documents(two_owners, make_note, fake_kb):
    make_note("alice", title="never synced")
    make_note("alice", title="one")
    make_note("alice", title="two")
    fake_kb.fail("apply_upload_lease", RemoteTransportError("lease down"), times=1)
    sync_scheduler.sync_for_owner("alice")

    result = sync_scheduler.update_synced_for_owner("alice")

    assert result == {"owner_id": "alice", "updated": 2, "failed": 0}
    assert sorted(fake_kb.deleted) == ["file-1", "file-2"]


def test_notes_status_reports_sync_state(two_owners, make_note, fake_kb):
    synced_id = make_note("alice", title="synced")
    sync_scheduler.sync_for_owner("alice")
    pending_id = make_note("alice", title="pending")

    status = sync_scheduler.notes_status_for_owner("alice")

    assert status["active_notes_count"] == 2
    assert status["synced_count"] == 1
    by_id = {entry["id"]: entry for entry in status["notes"]}
    assert by_id[synced_id]["synced"] is True
    assert by_id[synced_id]["remote_document_id"] == "file-1"
    assert by_id[pending_id]["synced"] is False
    assert by_id[pending_id]["last_outcome"] is None


def test_trigger_sync_all_returns_immediately(monkeypatch):
    started = threading.Event()
    release = threading.Event()
    seen_events = []

    def slow_sync_all(cancel_event=None):
        seen_events.append(cancel_event)
        started.set()
        release.wait(5)
        return {"status": "completed"}

    monkeypatch.setattr(sync_scheduler, "sync_all", slow_sync_all)
    try:
        response = sync_scheduler.trigger_sync_all()
        assert response["status"] == "accepted"
        assert started.wait(5)
        assert not release.is_set()
    finally:
        release.set()
        sync_scheduler.shutdown_background_sync(wait=True)

    assert seen_events[0].is_set()
