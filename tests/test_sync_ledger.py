import os

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

from notebridge.errors import ValidationIssue
from notebridge.models import SyncOutcome, SyncRecord
from notebridge.services import sync_ledger


def _attempt(note_id, outcome, document_id=None, owner_id="owner-1", error=None):
    return sync_ledger.record_attempt(
        note_id=note_id,
        owner_id=owner_id,
        outcome=outcome,
        external_index_id="idx-1",
        remote_document_id=document_id,
        error_message=error,
    )


def test_unknown_note_is_not_synced(server_db):
    assert sync_ledger.is_synced(1) is False
    assert sync_ledger.latest_successful(1) is None
    assert sync_ledger.latest_for_note(1) is None


def test_latest_record_decides_synced_state(server_db):
    _attempt(1, SyncOutcome.FAILED, error="lease failed")
    assert sync_ledger.is_synced(1) is False

    success = _attempt(1, SyncOutcome.SUCCESS, document_id="file-1")
    assert sync_ledger.is_synced(1) is True
    assert success["outcome"] == "SUCCESS"
    assert success["external_index_id"] == "idx-1"

    _attempt(1, SyncOutcome.FAILED, error="upload failed")
    assert sync_ledger.is_synced(1) is False
    assert sync_ledger.latest_successful(1)["remote_document_id"] == "file-1"
    assert sync_ledger.latest_for_note(1)["error_message"] == "upload failed"


def test_records_are_appended_never_rewritten(server_db, db_session):
    _attempt(7, SyncOutcome.SUCCESS, document_id="file-1")
    _attempt(7, SyncOutcome.SUCCESS, document_id="file-2")

    assert db_session.query(SyncRecord).filter_by(note_id=7).count() == 2
    history = sync_ledger.history_for_note(7)
    assert [record["remote_document_id"] for record in history] == ["file-1", "file-2"]
    assert sync_ledger.latest_successful(7)["remote_document_id"] == "file-2"


def test_history_is_scoped_per_note(server_db):
    _attempt(1, SyncOutcome.SUCCESS, document_id="file-1")
    _attempt(2, SyncOutcome.FAILED, error="boom")

    assert sync_ledger.is_synced(1) is True
    assert sync_ledger.is_synced(2) is False
    assert len(sync_ledger.history_for_note(2)) == 1


def test_history_for_owner_is_newest_first_and_limited(server_db):
    for note_id in range(1, 5):
        _attempt(note_id, SyncOutcome.SUCCESS, document_id=f"file-{note_id}", owner_id="alice")
    _attempt(99, SyncOutcome.SUCCESS, document_id="other", owner_id="bob")

    history = sync_ledger.history_for_owner("alice", limit=3)
    assert [record["note_id"] for record in history] == [4, 3, 2]

    with pytest.raises(ValidationIssue):
        sync_ledger.history_for_owner("alice", limit=0)
