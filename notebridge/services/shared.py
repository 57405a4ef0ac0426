"""
Shared helpers for NoteBridge services.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import notebridge.config as config
from notebridge.models import BindingState, KnowledgeBaseBinding

logger = config.logger


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _enum_value(value) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


def _binding_payload(binding: KnowledgeBaseBinding) -> dict:
    return {
        "id": binding.id,
        "owner_id": binding.owner_id,
        "external_index_id": binding.external_index_id,
        "workspace_id": binding.workspace_id,
        "display_name": binding.display_name,
        "state": _enum_value(binding.state),
        "last_sync_at": _iso(binding.last_sync_at),
        "created_at": _iso(binding.created_at),
        "updated_at": _iso(binding.updated_at),
    }


def _get_binding(db, owner_id: str) -> Optional[KnowledgeBaseBinding]:
    return (
        db.query(KnowledgeBaseBinding)
        .filter(KnowledgeBaseBinding.owner_id == owner_id)
        .first()
    )


def _upsert_binding(
    db,
    owner_id: str,
    external_index_id: str,
    display_name: Optional[str],
) -> KnowledgeBaseBinding:
    """
    Point the owner's binding at the given index, creating it if needed.

    Commits on success; the caller owns rollback on failure.
    """
    binding = _get_binding(db, owner_id)
    if binding is None:
        binding = KnowledgeBaseBinding(
            owner_id=owner_id,
            external_index_id=external_index_id,
            workspace_id=config.KB_WORKSPACE_ID,
            display_name=display_name,
            state=BindingState.ACTIVE,
        )
        db.add(binding)
    else:
        if binding.external_index_id != external_index_id:
            logger.info(
                f"Re-pointing binding for owner {owner_id} "
                f"from {binding.external_index_id} to {external_index_id}"
            )
        binding.external_index_id = external_index_id
        binding.display_name = display_name
        binding.state = BindingState.ACTIVE
        binding.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(binding)
    return binding
