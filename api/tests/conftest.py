import os
from datetime import datetime, timedelta
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

from signflow.main import app  # noqa: E402
from signflow import db as db_module  # noqa: E402
from signflow.config import Settings  # noqa: E402
from signflow.context import EngineContext, get_context  # noqa: E402
from signflow.db import get_session  # noqa: E402
from signflow.engine import SigningEngine  # noqa: E402
from signflow.errors import ArtifactStoreError  # noqa: E402
from signflow.notifier import Contact, DeliveryResult  # noqa: E402
from signflow.schemas import RequestCreate, SignerInput  # noqa: E402
from signflow.storage import document_key, final_key  # noqa: E402

START = datetime(2026, 3, 2, 9, 0, 0)


class MemoryStore:
    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.fail_writes = False

    def get_artifact(self, document_id: str) -> bytes:
        key = document_key(document_id)
        if key not in self.objects:
            raise ArtifactStoreError(f"cannot read {key}", {"key": key})
        return self.objects[key]

    def put_artifact(self, document_id: str, data: bytes, content_type: str = "application/pdf") -> str:
        key = document_key(document_id)
        self.objects[key] = bytes(data)
        return key

    def put_final_artifact(self, request_id: str, data: bytes) -> str:
        key = final_key(request_id)
        if self.fail_writes:
            raise ArtifactStoreError(f"cannot write {key}", {"key": key})
        self.objects[key] = bytes(data)
        return key

    def get_final_artifact(self, request_id: str) -> bytes:
        key = final_key(request_id)
        if key not in self.objects:
            raise ArtifactStoreError(f"cannot read {key}", {"key": key})
        return self.objects[key]


class RecordingNotifier:
    def __init__(self):
        self.sent: List[dict] = []
        self.failures = 0
        self.raise_error = False

    def send(self, contact: Contact, template: str, payload: dict) -> DeliveryResult:
        if self.raise_error:
            raise ConnectionError("smtp unreachable")
        if self.failures:
            self.failures -= 1
            return DeliveryResult(ok=False, detail="mailbox unavailable")
        self.sent.append({"to": contact.email, "name": contact.name, "template": template, "payload": payload})
        return DeliveryResult(ok=True, detail="sent")

    def templates(self, to=None):
        return [m["template"] for m in self.sent if to is None or m["to"] == to]


class FakeClock:
    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    db_module.init_db(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ctx(store, clock) -> EngineContext:
    return EngineContext(store=store, settings=Settings(), clock=clock)


@pytest.fixture
def session(test_engine, setup_db):
    with Session(test_engine) as s:
        yield s


@pytest.fixture
def engine(session, ctx) -> SigningEngine:
    return SigningEngine(session, ctx)


@pytest.fixture
def document_id(engine) -> str:
    return engine.upload_document(b"contract bytes v1", "application/octet-stream")


@pytest.fixture
def make_request(engine, document_id):
    """Build (and by default activate) a request; returns (request_id, [signer ids])."""

    def _make(emails=("alice@example.com", "bob@example.com"), mode="sequential", activate=True, **extra):
        data = RequestCreate(
            title="Lease agreement",
            document_id=extra.pop("document_id", None) or document_id,
            mode=mode,
            requester_name="Rita Requester",
            requester_email="rita@example.com",
            signers=[SignerInput(name=e.split("@")[0].title(), email=e) for e in emails],
            **extra,
        )
        request = engine.create_request(data)
        request_id = request.id
        if activate:
            engine.activate(request_id)
        view = engine.get_status(request_id)
        return request_id, [s.id for s in view.signers]

    return _make


@pytest.fixture
def client(test_engine, setup_db, ctx):
    db_module.engine = test_engine

    def override_session():
        with Session(test_engine) as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_context] = lambda: ctx
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
