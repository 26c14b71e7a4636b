"""FastAPI の CORS 応答ヘッダーを検証するテスト。"""

import pytest
from fastapi.testclient import TestClient

from memsnap.config import settings
from memsnap.main import create_app


def _build_client(monkeypatch: pytest.MonkeyPatch, origins: tuple[str, ...]) -> TestClient:
    monkeypatch.setattr(settings, "allowed_cors_origins", origins)
    return TestClient(create_app())


def _preflight(client: TestClient, origin: str):
    return client.options(
        "/api/snapshots",
        headers={"Origin": origin, "Access-Control-Request-Method": "POST"},
    )


def test_cors_allows_only_configured_origin(monkeypatch: pytest.MonkeyPatch) -> None:
    """許可オリジンにはヘッダーが付き、未許可には付かないことを確認する。"""

    client = _build_client(monkeypatch, ("https://app.example.com", "https://admin.example.com"))

    allowed = _preflight(client, "https://app.example.com")
    assert allowed.status_code == 200
    assert allowed.headers["access-control-allow-origin"] == "https://app.example.com"
    assert allowed.headers["access-control-allow-credentials"] == "true"

    denied = _preflight(client, "https://evil.example.com")
    assert denied.status_code == 400
    assert "access-control-allow-origin" not in denied.headers


def test_cors_wildcard_disables_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """許可オリジン未設定時はワイルドカードでクレデンシャルを付けない。"""

    client = _build_client(monkeypatch, ())

    preflight = _preflight(client, "https://anywhere.example")

    assert preflight.status_code == 200
    assert preflight.headers["access-control-allow-origin"] == "*"
    assert "access-control-allow-credentials" not in preflight.headers
