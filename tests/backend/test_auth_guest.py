"""ゲストセッション（セッション単位のインメモリストア）の振る舞いを検証する。"""

from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from memsnap.config import settings
from memsnap.dependencies import get_generation_flow
from memsnap.flows.snapshot_generate import SnapshotGenerationFlow
from memsnap.main import create_app
from memsnap.store import AppFirestoreStore
from tests.firestore_fakes import FakeFirestoreClient

_CARD = {
    "question": "What is a guest session?",
    "answer": "A temporary in-memory workspace.",
    "summary": "Guests keep data only in memory.",
    "analogy": "A hotel room.",
    "mnemonic": "Guests Go.",
}


class _StubLLM:
    def complete(self, prompt: str) -> str:
        return json.dumps(_CARD)


@pytest.fixture()
def firestore_client() -> FakeFirestoreClient:
    return FakeFirestoreClient()


@pytest.fixture()
def app(monkeypatch: pytest.MonkeyPatch, firestore_client: FakeFirestoreClient):
    monkeypatch.setattr(settings, "disable_session_auth", False)
    monkeypatch.setattr(settings, "strict_mode", False)
    application = create_app()
    application.state.store = AppFirestoreStore(client=firestore_client)
    application.dependency_overrides[get_generation_flow] = lambda: SnapshotGenerationFlow(
        llm=_StubLLM()
    )
    return application


def _guest_client(app) -> TestClient:
    client = TestClient(app)
    resp = client.post("/api/auth/guest")
    assert resp.status_code == 200
    assert resp.json() == {"guest": True}
    assert settings.guest_session_cookie_name in resp.cookies
    return client


def test_guest_can_create_and_review_without_touching_durable_store(
    app, firestore_client: FakeFirestoreClient
) -> None:
    client = _guest_client(app)

    created = client.post("/api/snapshots", json={"text": "Guest mode notes"})
    assert created.status_code == 201
    snapshot_id = created.json()["id"]

    reviewed = client.post(f"/api/snapshots/{snapshot_id}/review", json={"difficulty": "easy"})
    assert reviewed.status_code == 200
    assert reviewed.json()["review"]["review_count"] == 1

    me = client.get("/api/users/me").json()
    assert me["session_kind"] == "guest"
    assert me["user"]["id"].startswith("guest:")
    assert me["user"]["stats"]["total_snapshots"] == 1
    assert firestore_client.raw("snapshots", snapshot_id) is None
    assert firestore_client._data.get("users", {}) == {}


def test_guest_sessions_do_not_share_data(app) -> None:
    alice = _guest_client(app)
    bob = _guest_client(app)

    created = alice.post("/api/snapshots", json={"text": "Alice's secret"})
    assert created.status_code == 201
    snapshot_id = created.json()["id"]

    assert bob.get("/api/snapshots").json()["total"] == 0
    assert bob.get(f"/api/snapshots/{snapshot_id}").status_code == 404
    assert alice.get("/api/snapshots").json()["total"] == 1


def test_logout_discards_guest_store(app) -> None:
    client = _guest_client(app)
    assert client.post("/api/snapshots", json={"text": "ephemeral"}).status_code == 201
    assert len(app.state.guest_stores) == 1

    resp = client.post("/api/auth/logout")

    assert resp.status_code == 200
    assert len(app.state.guest_stores) == 0
    assert client.get("/api/snapshots").status_code == 401


def test_invalid_guest_cookie_is_rejected(app) -> None:
    client = TestClient(app)

    resp = client.get(
        "/api/snapshots",
        headers={"cookie": f"{settings.guest_session_cookie_name}=forged"},
    )

    assert resp.status_code == 401
