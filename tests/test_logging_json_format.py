"""構造化ログが1行1 JSON で出力され、シークレットが伏せられることを確認する。"""

import io
import json
from collections.abc import Callable
from contextlib import redirect_stderr, redirect_stdout

from fastapi.testclient import TestClient

from memsnap.config import settings


def _json_lines(action: Callable[[], object]) -> list[dict]:
    """Run `action` with stdout/stderr captured and parse the structlog lines.

    httpx などサードパーティの stdlib ログは JSON ではないので読み飛ばす。
    structlog の行に "INFO:root:" のような接頭辞が付くと `{` で始まらず、
    ここで拾えなくなる。
    """

    out, err = io.StringIO(), io.StringIO()
    with redirect_stdout(out), redirect_stderr(err):
        action()
    return [
        json.loads(line)
        for line in (err.getvalue() + "\n" + out.getvalue()).splitlines()
        if line.startswith("{")
    ]


def _emit(event: str, **fields: object) -> Callable[[], None]:
    def _action() -> None:
        from memsnap.logging import configure_logging, logger

        configure_logging()
        logger.info(event, **fields)

    return _action


def test_log_lines_are_bare_json_with_timestamp_and_service() -> None:
    lines = _json_lines(_emit("snapshot_created", snapshot_id="s-1", user_id="u-1"))

    entry = [line for line in lines if line["event"] == "snapshot_created"][-1]
    assert entry["level"] in {"info", "INFO"}
    assert entry["snapshot_id"] == "s-1"
    assert entry["service"] == "memsnap"
    assert entry["environment"] == settings.environment
    assert "timestamp" in entry


def test_access_log_reports_request_id_and_status() -> None:
    def _call_healthz() -> None:
        from memsnap.main import create_app

        with TestClient(create_app()) as client:
            assert client.get("/healthz", headers={"X-Request-ID": "abc-123"}).status_code == 200

    access = [line for line in _json_lines(_call_healthz) if line["event"] == "request_complete"]

    assert access, "request_complete log line not found"
    assert access[-1]["request_id"] == "abc-123"
    assert access[-1]["status_code"] == 200
    assert access[-1]["is_error"] is False
    assert access[-1]["path"] == "/healthz"


def test_sensitive_values_are_masked_in_logs(monkeypatch) -> None:
    secret = "sk-proj-1234567890"
    monkeypatch.setattr(settings, "openai_api_key", secret)

    lines = _json_lines(
        _emit(
            "config_dump",
            openai_api_key=secret,
            note=f"key leaked: {secret}",
            nested={"session_token": "abcdefghijklmnop"},
            attempts=[secret],
        )
    )

    entry = [line for line in lines if line["event"] == "config_dump"][-1]
    assert secret not in json.dumps(entry)
    assert entry["openai_api_key"] == "sk-p…7890"
    assert "sk-p…7890" in entry["note"]
    assert entry["nested"]["session_token"] == "abcd…mnop"
    assert entry["attempts"] == ["sk-p…7890"]
