"""
Knowledge base gateway: push one note through the remote write pipeline and
query an owner's index.

Upload is a linear sequence of remote steps

    START -> LEASE_OBTAINED -> CONTENT_UPLOADED -> FILE_REGISTERED -> INDEXED -> SUCCESS

and any failure lands in FAILED. There is no resumption; a retry starts over
from START. Every attempt ends with exactly one ledger record.
"""

from __future__ import annotations

import hashlib
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import notebridge.config as config
from notebridge.db import open_session
from notebridge.errors import BindingNotFound, NoCategoryConfigured, SyncCancelled, ValidationIssue
from notebridge.models import BindingState, NoteState, SyncOutcome
from notebridge.services import index_pool, sync_ledger
from notebridge.services.knowledge_client import SOURCE_TYPE_DATA_CENTER_FILE, get_client
from notebridge.services.shared import (
    _binding_payload,
    _enum_value,
    _get_binding,
    _upsert_binding,
    logger,
)
from notebridge.validators import normalize_owner_id

INDEX_NAME_PREFIX = "kb_"
DEFAULT_INDEX_DISPLAY_NAME = "default_kb"


class SyncStep(str, Enum):
    START = "START"
    LEASE_OBTAINED = "LEASE_OBTAINED"
    CONTENT_UPLOADED = "CONTENT_UPLOADED"
    FILE_REGISTERED = "FILE_REGISTERED"
    INDEXED = "INDEXED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RetrievalNode:
    text: str
    score: float
    source_document_id: Optional[str] = None
    source_title: Optional[str] = None


@dataclass(frozen=True)
class RetrievalResult:
    nodes: tuple = ()
    request_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.nodes


# =============================================================================
# Document building
# =============================================================================

def _format_tags(tags) -> Optional[str]:
    if not tags:
        return None
    if isinstance(tags, str):
        return tags
    return ", ".join(str(tag) for tag in tags)


def build_document(note: dict) -> str:
    """Deterministic plain-text rendering of a note; empty fields are omitted."""
    parts = []
    for label, value in (
        ("Title", note.get("title")),
        ("Content", note.get("content")),
        ("Comment", note.get("comment")),
        ("Tags", _format_tags(note.get("tags"))),
    ):
        if value:
            parts.append(f"{label}: {value}\n\n")
    if note.get("source"):
        parts.append(f"Source: {note['source']}\n")
    if note.get("created_at"):
        parts.append(f"Created: {note['created_at']}\n")
    return "".join(parts)


def _index_name_for_owner(owner_id: str) -> str:
    """Remote index names are capped at KB_INDEX_NAME_MAX_LENGTH characters."""
    slug = re.sub(r"[^A-Za-z0-9_-]", "_", owner_id)
    name = f"{INDEX_NAME_PREFIX}{slug}"
    if len(name) <= config.KB_INDEX_NAME_MAX_LENGTH:
        return name
    digest = hashlib.sha1(owner_id.encode("utf-8")).hexdigest()
    return f"{INDEX_NAME_PREFIX}{digest[: config.KB_INDEX_NAME_MAX_LENGTH - len(INDEX_NAME_PREFIX)]}"


# =============================================================================
# Bindings
# =============================================================================

def _bind_or_reuse(db, owner_id: str, external_index_id: str, display_name: str):
    try:
        return _upsert_binding(db, owner_id, external_index_id, display_name)
    except IntegrityError:
        # A concurrent caller created the owner's binding first
        db.rollback()
        binding = _get_binding(db, owner_id)
        if binding is None:
            raise
        return binding


def ensure_binding(owner_id) -> dict:
    """
    Resolve the owner's knowledge base binding, creating it if necessary.

    Resolution order: existing binding, the owner's pool slot, the shared
    default index, and finally a freshly provisioned remote index.
    Remote and database errors propagate.
    """
    owner_id = normalize_owner_id(owner_id)
    db = open_session()
    try:
        binding = _get_binding(db, owner_id)
        if binding is not None:
            return _binding_payload(binding)

        slot = index_pool._find_by_owner(db, owner_id)
        if slot is not None:
            logger.info(f"Binding owner {owner_id} to pool index {slot.external_index_id}")
            binding = _bind_or_reuse(
                db,
                owner_id,
                slot.external_index_id,
                slot.display_name or f"{INDEX_NAME_PREFIX}{owner_id}",
            )
            return _binding_payload(binding)

        if config.KB_DEFAULT_INDEX_ID:
            logger.warning(
                f"Owner {owner_id} has no pool index, falling back to default index "
                f"{config.KB_DEFAULT_INDEX_ID}"
            )
            binding = _bind_or_reuse(db, owner_id, config.KB_DEFAULT_INDEX_ID, DEFAULT_INDEX_DISPLAY_NAME)
            return _binding_payload(binding)

        name = _index_name_for_owner(owner_id)
        logger.info(f"Provisioning remote index {name} for owner {owner_id}")
        index_id = get_client().create_remote_index(
            name,
            config.KB_EMBEDDING_MODEL,
            f"Knowledge base for owner: {owner_id}",
        )
        binding = _bind_or_reuse(db, owner_id, index_id, name)
        logger.info(f"Created knowledge base for owner {owner_id}: index={index_id}")
        return _binding_payload(binding)
    finally:
        db.close()


def get_binding(owner_id) -> dict:
    """Existing binding only; raises BindingNotFound rather than provisioning."""
    owner_id = normalize_owner_id(owner_id)
    db = open_session()
    try:
        binding = _get_binding(db, owner_id)
        if binding is None:
            raise BindingNotFound(f"No knowledge base found for owner {owner_id}")
        return _binding_payload(binding)
    finally:
        db.close()


def _touch_binding(owner_id: str) -> None:
    db = open_session()
    try:
        binding = _get_binding(db, owner_id)
        if binding is not None:
            binding.last_sync_at = datetime.utcnow()
            db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(f"Failed to refresh last_sync_at for owner {owner_id}: {exc}")
    finally:
        db.close()


# =============================================================================
# Upload pipeline
# =============================================================================

def _check_cancel(cancel_event: Optional[threading.Event], next_step: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelled(f"sync cancelled before {next_step}")


def _record(note_id, owner_id, outcome, index_id, remote_document_id=None, error_message=None) -> dict:
    return sync_ledger.record_attempt(
        note_id=note_id,
        owner_id=owner_id,
        outcome=outcome,
        external_index_id=index_id,
        remote_document_id=remote_document_id,
        error_message=error_message,
    )


def upload_note(note: dict, cancel_event: Optional[threading.Event] = None) -> dict:
    """
    Run the four remote steps for one note and append the outcome to the ledger.

    Never raises for remote, binding or cancellation failures; those become a
    FAILED record carrying the error message.
    """
    note_id = note["id"]
    owner_id = str(note["owner_id"])
    step = SyncStep.START
    index_id = ""

    try:
        if _enum_value(note.get("state")) == NoteState.DELETED.value:
            raise ValidationIssue(f"note {note_id} is deleted", field="state", error_type="invalid_state")

        payload = build_document(note).encode("utf-8")
        file_name = f"note_{note_id}.txt"
        checksum = hashlib.md5(payload).hexdigest()

        binding = ensure_binding(owner_id)
        index_id = binding["external_index_id"]
        if binding["state"] != BindingState.ACTIVE.value:
            raise RuntimeError(f"knowledge base binding for owner {owner_id} is {binding['state']}")

        category_id = index_pool.category_for_owner(owner_id)
        if not category_id:
            raise NoCategoryConfigured(
                f"No category found for owner {owner_id}. Assign a pool index or set KB_DEFAULT_CATEGORY_ID"
            )

        logger.info(
            f"Uploading note {note_id} ({len(payload)} bytes) to category {category_id}, index {index_id}"
        )
        client = get_client()

        _check_cancel(cancel_event, "lease")
        lease = client.apply_upload_lease(category_id, file_name, checksum, len(payload))
        step = SyncStep.LEASE_OBTAINED

        _check_cancel(cancel_event, "upload")
        client.transmit_bytes(lease.upload_url, lease.upload_method, lease.upload_headers, payload)
        step = SyncStep.CONTENT_UPLOADED

        _check_cancel(cancel_event, "register")
        file_id = client.register_file(category_id, lease.lease_id, config.KB_PARSER_HINT)
        step = SyncStep.FILE_REGISTERED

        _check_cancel(cancel_event, "index")
        job_id = client.submit_index_ingestion(index_id, SOURCE_TYPE_DATA_CENTER_FILE, [file_id])
        step = SyncStep.INDEXED
    except Exception as exc:
        logger.error(
            f"Failed to add note {note_id} to knowledge base (last step {step.value}): {exc}"
        )
        return _record(note_id, owner_id, SyncOutcome.FAILED, index_id, error_message=str(exc))

    logger.info(f"Note {note_id} added to index {index_id}: file={file_id}, job={job_id}")
    record = _record(note_id, owner_id, SyncOutcome.SUCCESS, index_id, remote_document_id=file_id)
    _touch_binding(owner_id)
    return record


def delete_document(owner_id, remote_document_id: str) -> bool:
    """Best-effort remote delete. False when unbound or the remote call fails."""
    try:
        binding = get_binding(owner_id)
        deleted = get_client().delete_remote_file(remote_document_id)
        if deleted:
            logger.info(f"Deleted document {remote_document_id} from index {binding['external_index_id']}")
        return deleted
    except BindingNotFound as exc:
        logger.warning(str(exc))
        return False
    except Exception as exc:
        logger.error(f"Failed to delete document {remote_document_id} for owner {owner_id}: {exc}")
        return False


def update_note(note: dict, cancel_event: Optional[threading.Event] = None) -> dict:
    """
    Replace the note's remote document: delete the last synced copy, then upload.

    The delete is best-effort; when it fails the old document stays orphaned
    in the remote index.
    """
    note_id = note["id"]
    prior = sync_ledger.latest_successful(note_id)
    if prior is None or not prior["remote_document_id"]:
        return upload_note(note, cancel_event)

    old_document_id = prior["remote_document_id"]
    if not delete_document(note["owner_id"], old_document_id):
        logger.warning(f"Could not delete old document {old_document_id} for note {note_id}")
    record = upload_note(note, cancel_event)
    logger.info(f"Updated note {note_id} in knowledge base: outcome={record['outcome']}")
    return record


# =============================================================================
# Retrieval
# =============================================================================

def _parse_node(raw: dict) -> Optional[RetrievalNode]:
    """Convert one remote node; None when its score is unusable."""
    metadata = raw.get("Metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    score = raw.get("Score")
    try:
        score = float(score) if score is not None else 0.0
    except (TypeError, ValueError):
        logger.warning(f"Skipping retrieval node with non-numeric score {score!r}")
        return None
    text = raw.get("Text")
    return RetrievalNode(
        text=text if isinstance(text, str) else "",
        score=score,
        source_document_id=metadata.get("docId"),
        source_title=metadata.get("title") or metadata.get("docName"),
    )


def retrieve(owner_id, query: str) -> RetrievalResult:
    """Top-K similarity search in the owner's index; empty on any failure."""
    if not query or not query.strip():
        return RetrievalResult()
    try:
        binding = get_binding(owner_id)
        if binding["state"] != BindingState.ACTIVE.value:
            logger.info(f"Knowledge base for owner {owner_id} is {binding['state']}, skipping retrieval")
            return RetrievalResult()

        top_k = config.KB_RETRIEVE_TOP_K
        response = get_client().similarity_search(
            binding["external_index_id"],
            query[: config.MAX_QUERY_LENGTH],
            top_k,
        )
        nodes = []
        for raw in response["nodes"]:
            node = _parse_node(raw) if isinstance(raw, dict) else None
            if node is not None and node.score >= config.KB_RETRIEVE_MIN_SCORE:
                nodes.append(node)
        logger.info(f"Retrieved {len(nodes)} nodes for owner {owner_id}")
        return RetrievalResult(nodes=tuple(nodes[:top_k]), request_id=response.get("request_id"))
    except BindingNotFound:
        logger.info(f"No knowledge base for owner {owner_id}, skipping retrieval")
        return RetrievalResult()
    except Exception as exc:
        logger.error(f"Failed to retrieve from knowledge base for owner {owner_id}: {exc}")
        return RetrievalResult()


def is_note_synced(note_id: int) -> bool:
    return sync_ledger.is_synced(note_id)
