import os
import threading

os.environ.setdefault("DB_BACKEND", "sqlite")

from starlette.testclient import TestClient

import notebridge.config as config
from notebridge.db import DB
from notebridge.services import sync_scheduler
from app.main import app


def test_health_reports_uninitialized_database(monkeypatch):
    monkeypatch.setattr(DB, "engine", None)
    client = TestClient(app)

    response = client.get("/health")

    assert response.status_code == 503
    detail = response.json()["detail"]
    assert detail["database"] == {"ok": False, "error": "db_not_initialized"}
    assert "circuit_breaker" in detail["knowledge_base"]


def test_lifespan_migrates_and_serves(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DATABASE_URL", f"sqlite:///{tmp_path / 'app.sqlite'}")
    monkeypatch.setattr(config, "AUTO_MIGRATE_ON_STARTUP", True)
    monkeypatch.setattr(config, "KB_API_KEY", None)
    monkeypatch.setattr(DB, "engine", None)
    monkeypatch.setattr(DB, "SessionLocal", None)

    triggered = threading.Event()

    def fake_sync_all(cancel_event=None):
        triggered.set()
        return {"status": "completed"}

    monkeypatch.setattr(sync_scheduler, "sync_all", fake_sync_all)

    with TestClient(app) as client:
        health = client.get("/health")
        assert health.status_code == 200
        body = health.json()
        assert body["status"] == "healthy"
        assert body["database"]["schema_revision"] == "0001_initial_schema"
        assert body["knowledge_base"]["status"] == "unconfigured"

        accepted = client.post("/sync/all")
        assert accepted.status_code == 202
        assert accepted.json()["status"] == "accepted"
        assert triggered.wait(5)
