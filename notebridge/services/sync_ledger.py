"""
Append-only history of note sync attempts.

A note counts as synced when its most recent record is a SUCCESS. Records are
never updated or deleted; a newer attempt supersedes older ones by insertion.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import notebridge.config as config
from notebridge.db import open_session
from notebridge.models import SyncOutcome, SyncRecord
from notebridge.services.shared import _enum_value, _iso, logger
from notebridge.validators import normalize_owner_id, validate_limit


def _record_payload(record: SyncRecord) -> dict:
    return {
        "id": record.id,
        "note_id": record.note_id,
        "owner_id": record.owner_id,
        "external_index_id": record.external_index_id,
        "remote_document_id": record.remote_document_id,
        "outcome": _enum_value(record.outcome),
        "error_message": record.error_message,
        "synced_at": _iso(record.synced_at),
    }


def _latest_query(db, note_id: int):
    return (
        db.query(SyncRecord)
        .filter(SyncRecord.note_id == note_id)
        .order_by(SyncRecord.synced_at.desc(), SyncRecord.id.desc())
    )


def record_attempt(
    *,
    note_id: int,
    owner_id: str,
    outcome: SyncOutcome,
    external_index_id: Optional[str] = None,
    remote_document_id: Optional[str] = None,
    error_message: Optional[str] = None,
) -> dict:
    """Append one attempt. A single insert + commit, so readers never see half a record."""
    db = open_session()
    try:
        record = SyncRecord(
            note_id=note_id,
            owner_id=owner_id,
            external_index_id=external_index_id or "",
            remote_document_id=remote_document_id,
            outcome=outcome,
            error_message=error_message,
            synced_at=datetime.utcnow(),
        )
        db.add(record)
        db.commit()
        db.refresh(record)
        logger.debug(
            "sync_record_appended",
            extra={"note_id": note_id, "outcome": _enum_value(outcome)},
        )
        return _record_payload(record)
    finally:
        db.close()


def latest_for_note(note_id: int) -> Optional[dict]:
    db = open_session()
    try:
        record = _latest_query(db, note_id).first()
        return _record_payload(record) if record else None
    finally:
        db.close()


def is_synced(note_id: int) -> bool:
    db = open_session()
    try:
        record = _latest_query(db, note_id).first()
        return record is not None and record.outcome == SyncOutcome.SUCCESS
    finally:
        db.close()


def latest_successful(note_id: int) -> Optional[dict]:
    db = open_session()
    try:
        record = (
            _latest_query(db, note_id)
            .filter(SyncRecord.outcome == SyncOutcome.SUCCESS)
            .first()
        )
        return _record_payload(record) if record else None
    finally:
        db.close()


def history_for_note(note_id: int) -> list[dict]:
    """Oldest first."""
    db = open_session()
    try:
        records = (
            db.query(SyncRecord)
            .filter(SyncRecord.note_id == note_id)
            .order_by(SyncRecord.synced_at.asc(), SyncRecord.id.asc())
            .all()
        )
        return [_record_payload(record) for record in records]
    finally:
        db.close()


def history_for_owner(owner_id, limit: int = 100) -> list[dict]:
    """Newest first."""
    owner_id = normalize_owner_id(owner_id)
    validate_limit(limit, "limit", config.MAX_HISTORY_LIMIT)
    db = open_session()
    try:
        records = (
            db.query(SyncRecord)
            .filter(SyncRecord.owner_id == owner_id)
            .order_by(SyncRecord.synced_at.desc(), SyncRecord.id.desc())
            .limit(limit)
            .all()
        )
        return [_record_payload(record) for record in records]
    finally:
        db.close()
