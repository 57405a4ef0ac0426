"""
Manual sync trigger.
"""

from __future__ import annotations

from fastapi import APIRouter

from notebridge.services import sync_scheduler


router = APIRouter()


@router.post("/sync/all", status_code=202)
async def trigger_sync_all():
    """Start a full sync in the background; progress is only visible in logs and the ledger."""
    return sync_scheduler.trigger_sync_all()
