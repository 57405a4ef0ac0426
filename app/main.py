"""
Standalone FastAPI app wiring for NoteBridge.

Hosts the periodic notes sync loop and a thin operational surface.
"""

from __future__ import annotations

import asyncio
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI

import notebridge.config as config
from notebridge.db import dispose_engine, init_db
from notebridge.services import knowledge_client
from notebridge.services import sync_scheduler
from app.routes.health import router as health_router
from app.routes.sync import router as sync_router


sync_task = None
sync_cancel_event = threading.Event()


async def _sync_loop() -> None:
    if config.SYNC_INTERVAL_SECONDS <= 0:
        return
    while True:
        await asyncio.sleep(config.SYNC_INTERVAL_SECONDS)
        try:
            await asyncio.to_thread(sync_scheduler.sync_all, sync_cancel_event)
        except Exception as exc:
            config.logger.warning(f"Notes sync task error: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    global sync_task
    init_db()
    knowledge_client.init_client()
    sync_cancel_event.clear()
    if config.SYNC_ENABLED and config.SYNC_INTERVAL_SECONDS > 0:
        sync_task = asyncio.create_task(_sync_loop())
    try:
        yield
    finally:
        sync_cancel_event.set()
        sync_scheduler.shutdown_background_sync()
        if sync_task:
            sync_task.cancel()
            try:
                await sync_task
            except asyncio.CancelledError:
                pass
            sync_task = None
        knowledge_client.close_client()
        dispose_engine()


app = FastAPI(title="NoteBridge", redirect_slashes=False, lifespan=lifespan)

app.include_router(health_router)
app.include_router(sync_router)
