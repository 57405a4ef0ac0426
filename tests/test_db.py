import os

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

import notebridge.config as config
import notebridge.db as db
from notebridge.db import DB


@pytest.fixture
def fresh_db(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DATABASE_URL", f"sqlite:///{tmp_path / 'fresh.sqlite'}")
    monkeypatch.setattr(DB, "engine", None)
    monkeypatch.setattr(DB, "SessionLocal", None)
    yield
    db.dispose_engine()


def test_sqlite_engine_waits_for_write_lock(fresh_db, monkeypatch):
    monkeypatch.setattr(config, "SQLITE_BUSY_TIMEOUT_SECONDS", 12.5)
    monkeypatch.setattr(config, "AUTO_MIGRATE_ON_STARTUP", True)
    seen = {}
    real_create_engine = db.create_engine

    def recording_create_engine(url, **kwargs):
        seen.update(kwargs)
        return real_create_engine(url, **kwargs)

    monkeypatch.setattr(db, "create_engine", recording_create_engine)

    db.init_db()

    assert seen["connect_args"] == {"check_same_thread": False, "timeout": 12.5}
    assert "pool_pre_ping" in db._engine_kwargs("postgres")


def test_init_db_migrates_to_head(fresh_db, monkeypatch):
    monkeypatch.setattr(config, "AUTO_MIGRATE_ON_STARTUP", True)

    db.init_db()

    status = db.schema_status(DB.engine)
    assert status["schema_up_to_date"] is True
    assert status["schema_revision"] == "0001_initial_schema"
    session = db.open_session()
    session.close()


def test_init_db_refuses_unmigrated_schema(fresh_db, monkeypatch):
    monkeypatch.setattr(config, "AUTO_MIGRATE_ON_STARTUP", False)

    with pytest.raises(RuntimeError, match="alembic upgrade head"):
        db.init_db()


def test_open_session_requires_init(monkeypatch):
    monkeypatch.setattr(DB, "SessionLocal", None)

    with pytest.raises(RuntimeError):
        db.open_session()
