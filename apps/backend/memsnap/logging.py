"""structlog の初期化とシークレットのマスク処理。

すべてのイベントは stdlib logging 経由で1行の JSON として出力する。
キー名がシークレットらしいフィールドと、設定済みのシークレット値
（OpenAI API キー、セッション署名鍵）そのものは伏せ字に置き換える。
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

import structlog
from structlog import contextvars as structlog_contextvars

from .config import settings

_SENSITIVE_KEY_PARTS = ("api_key", "token", "secret", "authorization", "password", "cookie")
_MASK = "***"
_SERVICE_NAME = "memsnap"


def mask_secret(raw: object) -> str:
    """Mask a secret, keeping the first and last 4 characters of long values."""

    text = "" if raw is None else str(raw).strip()
    if len(text) <= 8:
        return _MASK
    return f"{text[:4]}…{text[-4:]}"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in _SENSITIVE_KEY_PARTS)


class _SecretMasker:
    """structlog processor hiding secret-like fields and known secret literals.

    既知のシークレットは長いものから順に置換し、部分一致による取りこぼしを防ぐ。
    list/tuple/dict は再帰的にたどる。
    """

    def __init__(self, known_secrets: Iterable[str | None]) -> None:
        unique = {secret.strip() for secret in known_secrets if secret and secret.strip()}
        self._known = tuple(sorted(unique, key=len, reverse=True))

    def _scrub_text(self, text: str) -> str:
        for secret in self._known:
            if secret in text:
                text = text.replace(secret, mask_secret(secret))
        return text

    def _scrub(self, value: Any, key: str | None) -> Any:
        sensitive = key is not None and _is_sensitive_key(key)
        if isinstance(value, dict):
            return {k: self._scrub(v, str(k)) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._scrub(item, key) for item in value]
        if isinstance(value, str):
            cleaned = self._scrub_text(value)
            return mask_secret(cleaned) if sensitive else cleaned
        if sensitive and value is not None:
            return mask_secret(value)
        return value

    def __call__(
        self,
        _logger: structlog.types.WrappedLogger,
        _method_name: str,
        event_dict: dict[str, Any],
    ) -> dict[str, Any]:
        for key, value in list(event_dict.items()):
            event_dict[key] = self._scrub(value, str(key))
        return event_dict


def _add_service_context(
    _logger: structlog.types.WrappedLogger,
    _method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    event_dict.setdefault("service", _SERVICE_NAME)
    event_dict.setdefault("environment", settings.environment)
    return event_dict


def _resolve_level(name: str | None) -> int:
    level = logging.getLevelName((name or "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging() -> None:
    """Configure structlog (JSON lines) and optional Sentry forwarding.

    stdlib 側のプレフィックス（"INFO:root:" など）が JSON の前に付かないよう
    フォーマットは `%(message)s` に固定し、既存ハンドラは置き換える。
    """

    logging.basicConfig(
        level=_resolve_level(settings.log_level),
        format="%(message)s",
        handlers=[logging.StreamHandler()],
        force=True,
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog_contextvars.merge_contextvars,
            _add_service_context,
            _SecretMasker((settings.openai_api_key, settings.session_secret_key)),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
    )

    if not settings.sentry_dsn:
        return
    try:
        import sentry_sdk  # type: ignore
        from sentry_sdk.integrations.logging import LoggingIntegration  # type: ignore
    except ImportError:
        logger.warning("sentry_unavailable", reason="sentry_sdk_not_installed")
        return
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
    )


logger = structlog.get_logger()
