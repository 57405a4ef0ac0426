"""
Index pool allocation.

The pool holds pre-provisioned remote indexes ("slots"). Each owner holds at
most one slot and each slot serves at most one owner. The AVAILABLE -> ASSIGNED
transition is a conditional UPDATE guarded by the previous state, so two
concurrent registrations can never walk away with the same slot; the loser of
a race simply selects again.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

import notebridge.config as config
from notebridge.db import open_session
from notebridge.errors import DuplicateSlot, PoolExhausted, SlotInUse, SlotNotFound
from notebridge.models import IndexSlot, KnowledgeBaseBinding, SlotState
from notebridge.services.shared import _enum_value, _iso, _upsert_binding, logger
from notebridge.validators import normalize_owner_id, validate_slot_fields


def _slot_payload(slot: IndexSlot) -> dict:
    return {
        "id": slot.id,
        "external_index_id": slot.external_index_id,
        "category_id": slot.category_id,
        "display_name": slot.display_name,
        "state": _enum_value(slot.state),
        "assigned_owner_id": slot.assigned_owner_id,
        "assigned_at": _iso(slot.assigned_at),
        "created_at": _iso(slot.created_at),
        "updated_at": _iso(slot.updated_at),
    }


def _find_by_owner(db, owner_id: str) -> Optional[IndexSlot]:
    return (
        db.query(IndexSlot)
        .filter(IndexSlot.assigned_owner_id == owner_id)
        .first()
    )


def _find_by_id(db, slot_id: int) -> IndexSlot:
    slot = db.get(IndexSlot, slot_id)
    if slot is None:
        raise SlotNotFound(f"Index slot not found: {slot_id}")
    return slot


def _first_available(db) -> Optional[IndexSlot]:
    return (
        db.query(IndexSlot)
        .filter(IndexSlot.state == SlotState.AVAILABLE)
        .order_by(IndexSlot.id.asc())
        .first()
    )


def _count_available(db) -> int:
    return (
        db.query(func.count(IndexSlot.id))
        .filter(IndexSlot.state == SlotState.AVAILABLE)
        .scalar()
        or 0
    )


def _try_claim(db, slot_id: int, owner_id: str) -> bool:
    """Conditional AVAILABLE -> ASSIGNED transition. True if this caller won."""
    now = datetime.utcnow()
    affected = (
        db.query(IndexSlot)
        .filter(IndexSlot.id == slot_id, IndexSlot.state == SlotState.AVAILABLE)
        .update(
            {
                IndexSlot.state: SlotState.ASSIGNED,
                IndexSlot.assigned_owner_id: owner_id,
                IndexSlot.assigned_at: now,
                IndexSlot.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    return affected == 1


def _unclaim(db, slot_id: int, owner_id: str) -> None:
    (
        db.query(IndexSlot)
        .filter(IndexSlot.id == slot_id, IndexSlot.assigned_owner_id == owner_id)
        .update(
            {
                IndexSlot.state: SlotState.AVAILABLE,
                IndexSlot.assigned_owner_id: None,
                IndexSlot.assigned_at: None,
                IndexSlot.updated_at: datetime.utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()


def _bind_claimed_slot(db, slot: IndexSlot, owner_id: str) -> None:
    """Second step of assignment; releases the slot again if binding fails."""
    display_name = slot.display_name or f"kb_{owner_id}"
    try:
        _upsert_binding(db, owner_id, slot.external_index_id, display_name)
    except Exception:
        db.rollback()
        logger.error(
            f"Binding creation failed for owner {owner_id}; releasing slot {slot.external_index_id}"
        )
        _unclaim(db, slot.id, owner_id)
        raise


# =============================================================================
# Pool administration
# =============================================================================

def seed_slot(external_index_id: str, category_id: Optional[str], name: Optional[str] = None) -> dict:
    """Add a pre-provisioned remote index to the pool."""
    validate_slot_fields(external_index_id, category_id, name)
    external_index_id = external_index_id.strip()
    db = open_session()
    try:
        existing = (
            db.query(IndexSlot)
            .filter(IndexSlot.external_index_id == external_index_id)
            .first()
        )
        if existing is not None:
            raise DuplicateSlot(f"Index already exists in pool: {external_index_id}")
        slot = IndexSlot(
            external_index_id=external_index_id,
            category_id=category_id,
            display_name=name,
            state=SlotState.AVAILABLE,
        )
        db.add(slot)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise DuplicateSlot(f"Index already exists in pool: {external_index_id}") from exc
        db.refresh(slot)
        logger.info(
            f"Added index to pool: id={slot.id}, index={external_index_id}, category={category_id}"
        )
        return _slot_payload(slot)
    finally:
        db.close()


def seed_slots(entries: Iterable[Mapping]) -> int:
    """Batch seeding; duplicates are skipped. Returns the number added."""
    added = 0
    for entry in entries:
        try:
            seed_slot(
                entry["external_index_id"],
                entry.get("category_id"),
                entry.get("name"),
            )
            added += 1
        except DuplicateSlot:
            logger.warning(f"Skipping duplicate index: {entry['external_index_id']}")
    logger.info(f"Batch added {added} indexes to pool")
    return added


def disable_slot(slot_id: int) -> dict:
    db = open_session()
    try:
        slot = _find_by_id(db, slot_id)
        slot.state = SlotState.DISABLED
        slot.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(slot)
        logger.info(f"Disabled index pool entry: {slot_id}")
        return _slot_payload(slot)
    finally:
        db.close()


def enable_slot(slot_id: int) -> dict:
    """Re-enable a disabled slot: AVAILABLE when unowned, ASSIGNED when still held."""
    db = open_session()
    try:
        slot = _find_by_id(db, slot_id)
        if slot.state == SlotState.DISABLED:
            slot.state = SlotState.ASSIGNED if slot.assigned_owner_id else SlotState.AVAILABLE
            slot.updated_at = datetime.utcnow()
            db.commit()
            db.refresh(slot)
            logger.info(f"Enabled index pool entry: {slot_id} -> {_enum_value(slot.state)}")
        return _slot_payload(slot)
    finally:
        db.close()


def delete_slot(slot_id: int) -> None:
    db = open_session()
    try:
        slot = _find_by_id(db, slot_id)
        if slot.state == SlotState.ASSIGNED or slot.assigned_owner_id:
            raise SlotInUse("Cannot delete assigned index. Release it first.")
        db.delete(slot)
        db.commit()
        logger.info(f"Deleted index from pool: {slot_id}")
    finally:
        db.close()


def list_slots(state: Optional[str] = None) -> list[dict]:
    db = open_session()
    try:
        query = db.query(IndexSlot)
        if state is not None:
            query = query.filter(IndexSlot.state == SlotState(state))
        return [_slot_payload(slot) for slot in query.order_by(IndexSlot.id.asc()).all()]
    finally:
        db.close()


def pool_stats() -> dict:
    db = open_session()
    try:
        rows = (
            db.query(IndexSlot.state, func.count(IndexSlot.id))
            .group_by(IndexSlot.state)
            .all()
        )
        counts = {_enum_value(state): count for state, count in rows}
        return {
            "total": sum(counts.values()),
            "available": counts.get(SlotState.AVAILABLE.value, 0),
            "assigned": counts.get(SlotState.ASSIGNED.value, 0),
            "disabled": counts.get(SlotState.DISABLED.value, 0),
        }
    finally:
        db.close()


# =============================================================================
# Owner assignment
# =============================================================================

def get_slot_for_owner(owner_id) -> Optional[dict]:
    owner_id = normalize_owner_id(owner_id)
    db = open_session()
    try:
        slot = _find_by_owner(db, owner_id)
        return _slot_payload(slot) if slot else None
    finally:
        db.close()


def assign_slot(owner_id) -> dict:
    """
    Bind one AVAILABLE slot to the owner, or return the slot they already hold.

    Raises PoolExhausted when no slot can be claimed. Attempts are capped by
    the number of AVAILABLE slots seen at the start so an exhausted pool under
    contention cannot spin forever.
    """
    owner_id = normalize_owner_id(owner_id)
    db = open_session()
    try:
        existing = _find_by_owner(db, owner_id)
        if existing is not None:
            logger.info(f"Owner {owner_id} already has assigned index: {existing.external_index_id}")
            return _slot_payload(existing)

        attempts_left = max(1, _count_available(db))
        while attempts_left > 0:
            attempts_left -= 1
            candidate = _first_available(db)
            if candidate is None:
                break
            slot_id = candidate.id
            external_index_id = candidate.external_index_id
            try:
                claimed = _try_claim(db, slot_id, owner_id)
                if claimed:
                    db.commit()
            except IntegrityError:
                # Same owner won a concurrent assignment on another slot
                db.rollback()
                held = _find_by_owner(db, owner_id)
                if held is not None:
                    return _slot_payload(held)
                raise
            if not claimed:
                db.rollback()
                logger.warning(f"Index {external_index_id} was assigned by another process, retrying...")
                continue

            slot = db.get(IndexSlot, slot_id)
            _bind_claimed_slot(db, slot, owner_id)
            db.refresh(slot)
            logger.info(f"Assigned index {external_index_id} to owner {owner_id}")
            return _slot_payload(slot)

        logger.error(f"No available index in pool for owner {owner_id}")
        raise PoolExhausted(
            "No available knowledge base index. Please contact administrator to add more indexes."
        )
    finally:
        db.close()


def release_slot(owner_id) -> bool:
    """
    Return the owner's slot to the pool. Idempotent; False when nothing was held.

    A DISABLED slot stays DISABLED but loses its owner. The owner's binding to
    the released index is removed.
    """
    owner_id = normalize_owner_id(owner_id)
    db = open_session()
    try:
        slot = _find_by_owner(db, owner_id)
        if slot is None:
            return False
        if slot.state == SlotState.ASSIGNED:
            slot.state = SlotState.AVAILABLE
        slot.assigned_owner_id = None
        slot.assigned_at = None
        slot.updated_at = datetime.utcnow()
        (
            db.query(KnowledgeBaseBinding)
            .filter(
                KnowledgeBaseBinding.owner_id == owner_id,
                KnowledgeBaseBinding.external_index_id == slot.external_index_id,
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        logger.info(f"Released index {slot.external_index_id} from owner {owner_id}")
        return True
    finally:
        db.close()


def category_for_owner(owner_id) -> Optional[str]:
    """Owner's slot category, else the configured default; None when neither exists."""
    owner_id = normalize_owner_id(owner_id)
    db = open_session()
    try:
        slot = _find_by_owner(db, owner_id)
        if slot is not None and slot.category_id:
            return slot.category_id
    finally:
        db.close()
    if config.KB_DEFAULT_CATEGORY_ID:
        logger.warning(
            f"Owner {owner_id} has no assigned category in pool, using default: "
            f"{config.KB_DEFAULT_CATEGORY_ID}"
        )
    return config.KB_DEFAULT_CATEGORY_ID
