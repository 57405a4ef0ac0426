"""
NoteBridge Database Models
Index pool, knowledge base bindings, notes and the sync ledger
"""

from datetime import datetime
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Index, UniqueConstraint, Enum, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

import notebridge.config as config

JSON_TYPE = JSONB if config.DB_BACKEND == "postgres" else JSON

Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class SlotState(str, PyEnum):
    AVAILABLE = "AVAILABLE"
    ASSIGNED = "ASSIGNED"
    DISABLED = "DISABLED"


class BindingState(str, PyEnum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"
    ERROR = "ERROR"


class NoteState(str, PyEnum):
    ACTIVE = "ACTIVE"
    DELETED = "DELETED"


class SyncOutcome(str, PyEnum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# =============================================================================
# Index pool (pre-provisioned remote indexes)
# =============================================================================

class IndexSlot(Base):
    __tablename__ = "index_slots"

    id = Column(Integer, primary_key=True)
    external_index_id = Column(String(100), nullable=False)
    category_id = Column(String(100))
    display_name = Column(String(255))
    state = Column(
        Enum(SlotState, name="slot_state", native_enum=False, length=20),
        default=SlotState.AVAILABLE,
        nullable=False,
    )
    assigned_owner_id = Column(String(100))
    assigned_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("external_index_id", name="uq_index_slots_external_index_id"),
        # NULLs never collide, so only owned slots are constrained
        UniqueConstraint("assigned_owner_id", name="uq_index_slots_assigned_owner_id"),
        Index("ix_index_slots_state", "state"),
    )


# =============================================================================
# Owner -> remote index binding
# =============================================================================

class KnowledgeBaseBinding(Base):
    __tablename__ = "knowledge_base_bindings"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(100), nullable=False)
    external_index_id = Column(String(100), nullable=False)
    workspace_id = Column(String(100))
    display_name = Column(String(255))
    state = Column(
        Enum(BindingState, name="binding_state", native_enum=False, length=20),
        default=BindingState.ACTIVE,
        nullable=False,
    )
    last_sync_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", name="uq_knowledge_base_bindings_owner_id"),
    )


# =============================================================================
# Notes (owned by the note subsystem; read-only here)
# =============================================================================

class Note(Base):
    __tablename__ = "notes"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(100), nullable=False)
    source = Column(String(255))
    title = Column(String(500))
    content = Column(Text)
    comment = Column(Text)  # free-text comment by the author
    tags = Column(JSON_TYPE, default=list)
    state = Column(
        Enum(NoteState, name="note_state", native_enum=False, length=20),
        default=NoteState.ACTIVE,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    ingested_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_notes_owner_state", "owner_id", "state"),
    )


# =============================================================================
# Sync ledger (append-only)
# =============================================================================

class SyncRecord(Base):
    __tablename__ = "sync_records"

    id = Column(Integer, primary_key=True)
    note_id = Column(Integer, nullable=False)
    owner_id = Column(String(100), nullable=False)
    external_index_id = Column(String(100), nullable=False, default="")
    remote_document_id = Column(String(255))
    outcome = Column(
        Enum(SyncOutcome, name="sync_outcome", native_enum=False, length=20),
        nullable=False,
    )
    error_message = Column(Text)
    synced_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_sync_records_note_synced_at", "note_id", "synced_at"),
        Index("ix_sync_records_owner_id", "owner_id"),
    )


__all__ = [
    "Base",
    "JSON_TYPE",
    "SlotState",
    "BindingState",
    "NoteState",
    "SyncOutcome",
    "IndexSlot",
    "KnowledgeBaseBinding",
    "Note",
    "SyncRecord",
]
