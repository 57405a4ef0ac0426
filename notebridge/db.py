"""
Engine/session holder and schema revision checks for NoteBridge.

Slot assignment is a conditional UPDATE that concurrent callers race on. On
postgres the row lock serializes them; on sqlite the whole file is locked, so
the engine is configured to wait for the lock rather than raise
"database is locked" at the loser.
"""

from __future__ import annotations

import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import notebridge.config as config

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class DB:
    """Database state holder (avoids global scoping issues)."""

    engine = None
    SessionLocal = None


def _engine_kwargs(backend: str) -> dict:
    if backend == "sqlite":
        return {
            "connect_args": {
                # Sessions are opened from worker threads and the sync executor
                "check_same_thread": False,
                "timeout": config.SQLITE_BUSY_TIMEOUT_SECONDS,
            },
        }
    return {"pool_pre_ping": True}


def _alembic_config(database_url: str):
    try:
        from alembic.config import Config
    except ImportError as exc:
        raise RuntimeError("Alembic is required for migrations") from exc

    cfg = Config(os.path.join(REPO_ROOT, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(REPO_ROOT, "alembic"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def schema_status(engine) -> dict:
    """Applied vs. expected migration revision for the given engine."""
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    expected = ScriptDirectory.from_config(_alembic_config(str(engine.url))).get_current_head()
    with engine.connect() as conn:
        applied = MigrationContext.configure(conn).get_current_revision()
    return {
        "schema_revision": applied,
        "schema_expected": expected,
        "schema_up_to_date": expected is None or applied == expected,
    }


def _migrate(engine, database_url: str) -> None:
    from alembic import command

    status = schema_status(engine)
    if status["schema_up_to_date"]:
        return
    if not config.AUTO_MIGRATE_ON_STARTUP:
        raise RuntimeError(
            f"Database schema at {status['schema_revision']}, expected {status['schema_expected']}. "
            "Run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true."
        )
    config.logger.info(
        f"Upgrading database schema {status['schema_revision']} -> {status['schema_expected']}"
    )
    command.upgrade(_alembic_config(database_url), "head")
    if not schema_status(engine)["schema_up_to_date"]:
        raise RuntimeError("Database migration did not reach expected revision")


def init_db() -> None:
    """Create the engine for the configured backend and bring the schema to head."""
    config.validate_and_prepare_config()

    config.logger.info(f"Connecting to {config.DB_BACKEND} database...")
    DB.engine = create_engine(config.DATABASE_URL, **_engine_kwargs(config.DB_BACKEND))
    DB.SessionLocal = sessionmaker(bind=DB.engine)

    _migrate(DB.engine, config.DATABASE_URL)
    config.logger.info("Database initialized")


def open_session():
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    return DB.SessionLocal()


def dispose_engine() -> None:
    if DB.engine is not None:
        DB.engine.dispose()
