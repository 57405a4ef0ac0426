import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("SYNC_ALL_DELAY_SECONDS", "0")
os.environ.setdefault("SYNC_OWNER_DELAY_SECONDS", "0")

from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import notebridge.config as config
from notebridge.db import DB, _engine_kwargs
from notebridge.models import Base, Note, NoteState
from notebridge.services import knowledge_client
from notebridge.services.knowledge_client import UploadLease


@pytest.fixture
def server_db(tmp_path):
    db_path = tmp_path / "notebridge.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", **_engine_kwargs("sqlite"))
    Base.metadata.create_all(engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = sessionmaker(bind=engine)
    try:
        yield engine
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    session = DB.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def sync_settings(monkeypatch):
    monkeypatch.setattr(config, "SYNC_ENABLED", True)
    monkeypatch.setattr(config, "SYNC_ALL_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(config, "SYNC_OWNER_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(config, "KB_DEFAULT_INDEX_ID", None)
    monkeypatch.setattr(config, "KB_DEFAULT_CATEGORY_ID", "cat-default")
    monkeypatch.setattr(config, "KB_RETRIEVE_TOP_K", 5)
    monkeypatch.setattr(config, "KB_RETRIEVE_MIN_SCORE", 0.5)
    monkeypatch.setattr(config, "KB_RETRY_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(config, "KB_RETRY_JITTER_SECONDS", 0.0)


class FakeKnowledgeBaseClient:
    """In-memory stand-in for KnowledgeBaseClient that records every call."""

    def __init__(self):
        self.calls = []
        self.leases = []
        self.uploads = []
        self.ingested = []
        self.deleted = []
        self.created_indexes = []
        self.search_nodes = []
        self.after_call = None
        self._failures = {}
        self._file_counter = 0

    def fail(self, action, exc, times=None):
        """Make `action` raise `exc`; `times=None` fails forever."""
        self._failures[action] = [exc, times]

    def _enter(self, action):
        self.calls.append(action)
        failure = self._failures.get(action)
        if failure is not None:
            exc, times = failure
            if times is None or times > 0:
                if times is not None:
                    failure[1] = times - 1
                raise exc

    def _exit(self, action):
        if self.after_call is not None:
            self.after_call(action)

    def apply_upload_lease(self, category_id, file_name, checksum, size_bytes):
        self._enter("apply_upload_lease")
        self.leases.append(
            {
                "category_id": category_id,
                "file_name": file_name,
                "checksum": checksum,
                "size_bytes": size_bytes,
            }
        )
        lease = UploadLease(
            lease_id=f"lease-{len(self.leases)}",
            upload_url="https://upload.example.test/bucket/object",
            upload_method="PUT",
            upload_headers={"X-bailian-extra": "abc"},
        )
        self._exit("apply_upload_lease")
        return lease

    def transmit_bytes(self, upload_url, upload_method, upload_headers, payload):
        self._enter("transmit_bytes")
        self.uploads.append(payload)
        self._exit("transmit_bytes")

    def register_file(self, category_id, lease_id, parser_hint):
        self._enter("register_file")
        self._file_counter += 1
        file_id = f"file-{self._file_counter}"
        self._exit("register_file")
        return file_id

    def submit_index_ingestion(self, index_id, source_type, file_ids):
        self._enter("submit_index_ingestion")
        self.ingested.append((index_id, list(file_ids)))
        self._exit("submit_index_ingestion")
        return f"job-{len(self.ingested)}"

    def delete_remote_file(self, remote_file_id):
        self._enter("delete_remote_file")
        self.deleted.append(remote_file_id)
        self._exit("delete_remote_file")
        return True

    def similarity_search(self, index_id, query, top_k):
        self._enter("similarity_search")
        self._exit("similarity_search")
        return {"request_id": "req-1", "nodes": list(self.search_nodes)}

    def create_remote_index(self, name, embedding_model, description):
        self._enter("create_remote_index")
        self.created_indexes.append(name)
        self._exit("create_remote_index")
        return f"idx-{name}"


@pytest.fixture
def fake_kb(monkeypatch):
    client = FakeKnowledgeBaseClient()
    monkeypatch.setattr(knowledge_client.KB, "client", client)
    return client


@pytest.fixture
def make_note(server_db):
    def _make_note(owner_id="owner-1", title="Note", content="Body", state=NoteState.ACTIVE, **fields):
        db = DB.SessionLocal()
        try:
            note = Note(
                owner_id=owner_id,
                title=title,
                content=content,
                state=state,
                created_at=fields.pop("created_at", datetime(2026, 1, 2, 3, 4, 5)),
                **fields,
            )
            db.add(note)
            db.commit()
            db.refresh(note)
            return note.id
        finally:
            db.close()

    return _make_note
