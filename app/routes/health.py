"""
Health and dependency endpoints.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, HTTPException
from sqlalchemy import text

import notebridge.config as config
from notebridge.db import DB, schema_status
from notebridge.services import knowledge_client


router = APIRouter()


def _check_db_health() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        return {"ok": False, "error": str(exc)}

    schema = schema_status(DB.engine)
    return {"ok": schema["schema_up_to_date"], **schema}


def _check_knowledge_base_health() -> dict:
    breaker_status = knowledge_client.remote_circuit_breaker.status()
    if not config.kb_credentials_configured():
        status = "unconfigured"
    elif breaker_status.get("open"):
        status = "cooldown"
    else:
        status = "ready"
    return {
        "status": status,
        "endpoint": config.KB_ENDPOINT,
        "circuit_breaker": breaker_status,
    }


@router.get("/health")
async def health():
    """Health check endpoint."""
    db_health = _check_db_health()
    kb_status = _check_knowledge_base_health()
    if not db_health.get("ok"):
        raise HTTPException(
            status_code=503,
            detail={"database": db_health, "knowledge_base": kb_status},
        )

    return {
        "status": "healthy",
        "service": "NoteBridge",
        "version": "0.1.0",
        "instance_id": os.environ.get("NOTEBRIDGE_INSTANCE_ID", "notebridge-1"),
        "sync_enabled": config.SYNC_ENABLED,
        "database": db_health,
        "knowledge_base": kb_status,
    }
