"""
Batch synchronization of notes into owners' knowledge bases.

Runs are strictly sequential with a fixed delay before each upload so the
remote service is never hit with a burst. The ledger makes runs idempotent:
a note whose latest record is SUCCESS is skipped, so repeating a run after a
partial failure only retries what failed.

Cancellation is a threading.Event observed during every delay and before each
remote step of an upload. Records already written stay written.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

import notebridge.config as config
from notebridge.models import SyncOutcome
from notebridge.services import knowledge_gateway, notes, sync_ledger
from notebridge.services.shared import logger
from notebridge.validators import normalize_owner_id


def _run_pipeline(
    label: str,
    note_list: list[dict],
    delay_seconds: float,
    cancel_event: threading.Event,
    *,
    skip_synced: bool,
    action: Optional[Callable[[dict, threading.Event], dict]] = None,
) -> dict:
    action = action or knowledge_gateway.upload_note
    succeeded = 0
    failed = 0
    skipped = 0
    cancelled = False

    for note in note_list:
        note_id = note["id"]
        try:
            if skip_synced and sync_ledger.is_synced(note_id):
                skipped += 1
                logger.debug(f"Note {note_id} already synced, skipping")
                continue
        except SQLAlchemyError as exc:
            failed += 1
            logger.error(f"Error checking sync state of note {note_id}: {exc}")
            continue

        # Event.wait returns True as soon as the event is set
        if cancel_event.wait(delay_seconds):
            cancelled = True
            logger.warning(f"{label} cancelled before note {note_id}")
            break

        try:
            record = action(note, cancel_event)
        except SQLAlchemyError as exc:
            failed += 1
            logger.error(f"Error syncing note {note_id}: {exc}")
            continue

        if record["outcome"] == SyncOutcome.SUCCESS.value:
            succeeded += 1
        else:
            failed += 1
        if cancel_event.is_set():
            cancelled = True
            logger.warning(f"{label} cancelled after note {note_id}")
            break

    return {
        "succeeded": succeeded,
        "failed": failed,
        "skipped": skipped,
        "cancelled": cancelled,
    }


def _active_notes(owner_id=None) -> Optional[list[dict]]:
    try:
        return notes.list_active_notes(owner_id)
    except SQLAlchemyError as exc:
        logger.error(f"Failed to enumerate active notes: {exc}")
        return None


# =============================================================================
# Runs
# =============================================================================

def sync_all(cancel_event: Optional[threading.Event] = None) -> dict:
    """Sync every ACTIVE note that is not yet synced, across all owners."""
    if not config.SYNC_ENABLED:
        logger.info("Knowledge base sync is disabled, skipping")
        return {"status": "skipped"}
    cancel_event = cancel_event or threading.Event()

    logger.info("Starting notes sync to knowledge base")
    started = time.monotonic()
    note_list = _active_notes()
    if note_list is None:
        return {"status": "error"}

    result = _run_pipeline(
        "Notes sync",
        note_list,
        config.SYNC_ALL_DELAY_SECONDS,
        cancel_event,
        skip_synced=True,
    )
    result["duration_seconds"] = round(time.monotonic() - started, 3)
    result["status"] = "cancelled" if result["cancelled"] else "completed"
    logger.info(
        "notes_sync_completed",
        extra={key: result[key] for key in ("succeeded", "failed", "skipped", "duration_seconds")},
    )
    logger.info(
        f"Completed notes sync. Success: {result['succeeded']}, Failed: {result['failed']}, "
        f"Skipped: {result['skipped']}, Duration: {result['duration_seconds']}s"
    )
    return result


def sync_for_owner(owner_id, cancel_event: Optional[threading.Event] = None) -> int:
    """Sync one owner's unsynced notes. Returns the number that succeeded."""
    owner_id = normalize_owner_id(owner_id)
    if not config.SYNC_ENABLED:
        logger.warning("Knowledge base sync is disabled")
        return 0

    logger.info(f"Starting notes sync for owner: {owner_id}")
    note_list = _active_notes(owner_id)
    if not note_list:
        logger.info(f"No active notes found for owner: {owner_id}")
        return 0

    result = _run_pipeline(
        f"Sync for owner {owner_id}",
        note_list,
        config.SYNC_OWNER_DELAY_SECONDS,
        cancel_event or threading.Event(),
        skip_synced=True,
    )
    logger.info(
        f"Completed sync for owner {owner_id}: total={len(note_list)}, "
        f"synced={result['succeeded']}, skipped={result['skipped']}"
    )
    return result["succeeded"]


def force_sync_for_owner(owner_id, cancel_event: Optional[threading.Event] = None) -> int:
    """
    Re-upload every ACTIVE note of the owner, ignoring the ledger.

    Previously synced notes get a second remote document; use update_synced_for_owner
    to replace documents instead.
    """
    owner_id = normalize_owner_id(owner_id)
    if not config.SYNC_ENABLED:
        logger.warning("Knowledge base sync is disabled")
        return 0

    logger.info(f"Starting force sync for all notes of owner: {owner_id}")
    note_list = _active_notes(owner_id)
    if not note_list:
        logger.info(f"No active notes found for owner: {owner_id}")
        return 0

    result = _run_pipeline(
        f"Force sync for owner {owner_id}",
        note_list,
        config.SYNC_OWNER_DELAY_SECONDS,
        cancel_event or threading.Event(),
        skip_synced=False,
    )
    logger.info(f"Completed force sync for owner {owner_id}, synced {result['succeeded']} notes")
    return result["succeeded"]


def update_synced_for_owner(owner_id, cancel_event: Optional[threading.Event] = None) -> dict:
    """Replace the remote document of every already-synced ACTIVE note."""
    owner_id = normalize_owner_id(owner_id)
    note_list = _active_notes(owner_id)
    if not note_list:
        return {"owner_id": owner_id, "updated": 0, "failed": 0}

    synced_notes = [note for note in note_list if sync_ledger.is_synced(note["id"])]
    result = _run_pipeline(
        f"Update for owner {owner_id}",
        synced_notes,
        config.SYNC_ALL_DELAY_SECONDS,
        cancel_event or threading.Event(),
        skip_synced=False,
        action=knowledge_gateway.update_note,
    )
    logger.info(
        f"Batch update for owner {owner_id} completed: "
        f"updated={result['succeeded']}, failed={result['failed']}"
    )
    return {"owner_id": owner_id, "updated": result["succeeded"], "failed": result["failed"]}


def notes_status_for_owner(owner_id) -> dict:
    owner_id = normalize_owner_id(owner_id)
    note_list = notes.list_active_notes(owner_id)
    details = []
    for note in note_list:
        latest = sync_ledger.latest_for_note(note["id"])
        synced = latest is not None and latest["outcome"] == SyncOutcome.SUCCESS.value
        details.append(
            {
                "id": note["id"],
                "title": note["title"],
                "created_at": note["created_at"],
                "synced": synced,
                "remote_document_id": latest["remote_document_id"] if synced else None,
                "last_outcome": latest["outcome"] if latest else None,
            }
        )
    return {
        "owner_id": owner_id,
        "active_notes_count": len(note_list),
        "synced_count": sum(1 for detail in details if detail["synced"]),
        "notes": details,
    }


# =============================================================================
# Background trigger
# =============================================================================

class _Background:
    executor: Optional[ThreadPoolExecutor] = None
    cancel_event = threading.Event()
    lock = threading.Lock()


def _log_background_result(future: Future) -> None:
    if future.cancelled():
        logger.warning("Background notes sync was cancelled before it started")
        return
    exc = future.exception()
    if exc is not None:
        logger.error(f"Background notes sync failed: {exc}")
        return
    logger.info(f"Background notes sync finished: {future.result()}")


def trigger_sync_all() -> dict:
    """Queue a full sync on the single background worker and return at once."""
    with _Background.lock:
        if _Background.executor is None:
            _Background.executor = ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix="notebridge-sync",
            )
        future = _Background.executor.submit(sync_all, _Background.cancel_event)
    future.add_done_callback(_log_background_result)
    logger.info("Manual global sync triggered")
    return {"status": "accepted", "message": "Global sync started in background"}


def shutdown_background_sync(wait: bool = False) -> None:
    """Cancel the running background sync, drop queued ones, stop the worker."""
    with _Background.lock:
        _Background.cancel_event.set()
        executor = _Background.executor
        _Background.executor = None
        # Later triggers get a fresh event; the running job keeps the set one
        _Background.cancel_event = threading.Event()
    if executor is not None:
        executor.shutdown(wait=wait, cancel_futures=True)
        logger.info("Background sync worker stopped")
