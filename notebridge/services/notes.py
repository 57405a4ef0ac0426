"""
Read-only access to notes owned by the note subsystem.
"""

from __future__ import annotations

from typing import Optional

from notebridge.db import open_session
from notebridge.models import Note, NoteState
from notebridge.services.shared import _enum_value, _iso
from notebridge.validators import normalize_owner_id


def _note_payload(note: Note) -> dict:
    return {
        "id": note.id,
        "owner_id": note.owner_id,
        "source": note.source,
        "title": note.title,
        "content": note.content,
        "comment": note.comment,
        "tags": list(note.tags or []),
        "state": _enum_value(note.state),
        "created_at": _iso(note.created_at),
        "ingested_at": _iso(note.ingested_at),
    }


def get_note(note_id: int) -> Optional[dict]:
    db = open_session()
    try:
        note = db.get(Note, note_id)
        return _note_payload(note) if note else None
    finally:
        db.close()


def list_active_notes(owner_id=None) -> list[dict]:
    """ACTIVE notes ordered by id, optionally for one owner."""
    db = open_session()
    try:
        query = db.query(Note).filter(Note.state == NoteState.ACTIVE)
        if owner_id is not None:
            query = query.filter(Note.owner_id == normalize_owner_id(owner_id))
        return [_note_payload(note) for note in query.order_by(Note.id.asc()).all()]
    finally:
        db.close()
