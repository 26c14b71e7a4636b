"""Snapshot 生成に使う LLM クライアント。

- 設定 (`LLM_PROVIDER` / `OPENAI_API_KEY`) からクライアントを選ぶ
- 1回の試行ごとにタイムアウトを課し、失敗時は小さなバックオフで再試行する
- 再試行を使い切ったら `LLMCallError` を reason_code 付きで送出する
"""

from __future__ import annotations

import contextvars
import hashlib
import inspect
import json
import time
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any

from openai import OpenAI

from ..config import settings
from ..logging import logger
from . import _get_llm_executor, _get_llm_instance, _set_llm_instance, _shutdown_state

# OPENAI_API_KEY=test-key のとき外部へ出さずに返すカード
_TEST_KEY_CARD: dict[str, str] = {
    "question": "What do mitochondria produce through oxidative phosphorylation?",
    "answer": "ATP, the cell's main energy currency.",
    "summary": "Mitochondria convert nutrients into ATP using oxygen.",
    "analogy": "Mitochondria are power plants turning fuel into electricity for the city.",
    "mnemonic": "Mighty Mito Makes ATP.",
}
_BACKOFF_STEP_SECONDS = 0.1

# (reason_code, メッセージ中の語, 例外クラス名中の語)
_REASON_RULES: tuple[tuple[str, tuple[str, ...], tuple[str, ...]], ...] = (
    ("TIMEOUT", ("timeout", "timed out"), ("timeout",)),
    ("RATE_LIMIT", ("rate limit", "too many requests", "429"), ("ratelimit",)),
    ("AUTH", ("invalid api key", "unauthorized", "401"), ("authentication", "permissiondenied")),
)


class _LLMBase:
    """Minimal client interface: prompt in, raw text out."""

    def complete(self, prompt: str) -> str:  # pragma: no cover - interface definition
        raise NotImplementedError


class _LocalFallbackLLM(_LLMBase):
    """API キーなしで動かすためのクライアント。空文字を返し、生成は EMPTY_RESPONSE で失敗する。"""

    def complete(self, prompt: str) -> str:
        logger.info("llm_local_fallback_call", prompt_chars=len(prompt))
        return ""


class _OpenAIResponsesLLM(_LLMBase):
    def __init__(self, *, api_key: str, model: str, temperature: float, max_output_tokens: int) -> None:
        self._api_key = api_key
        self._model = model
        self._temperature = min(1.0, max(0.0, float(temperature)))
        self._max_output_tokens = int(max_output_tokens)
        self._client = OpenAI(api_key=api_key)

    @property
    def model(self) -> str:
        return self._model

    def _accepted_params(self) -> frozenset[str]:
        # SDK のバージョン差で受け付ける引数が変わる。判定できなければ全て渡す
        try:
            return frozenset(inspect.signature(self._client.responses.create).parameters)
        except (TypeError, ValueError):
            return frozenset()

    def _request_kwargs(self, prompt: str, *, with_temperature: bool) -> dict[str, Any]:
        accepted = self._accepted_params()
        optional: dict[str, Any] = {
            "timeout": settings.llm_timeout_ms / 1000.0,
            "max_output_tokens": self._max_output_tokens,
        }
        if with_temperature:
            optional["temperature"] = self._temperature
        kwargs: dict[str, Any] = {"model": self._model, "input": prompt}
        kwargs.update(
            {name: value for name, value in optional.items() if not accepted or name in accepted}
        )
        return kwargs

    @staticmethod
    def _rejects_temperature(exc: Exception) -> bool:
        message = str(exc).lower()
        return "temperature" in message and ("unsupported" in message or "only the default" in message)

    @staticmethod
    def _response_text(response: Any) -> str:
        direct = getattr(response, "output_text", None)
        if isinstance(direct, str) and direct.strip():
            return direct.strip()
        payload = response if isinstance(response, dict) else response.model_dump()
        for item in payload.get("output") or []:
            for part in (item or {}).get("content") or []:
                text = (part or {}).get("text")
                if isinstance(text, str) and text.strip():
                    return text.strip()
        return ""

    def complete(self, prompt: str) -> str:
        logger.info("llm_openai_call", model=self._model, prompt_chars=len(prompt))
        if self._api_key == "test-key":
            return json.dumps(_TEST_KEY_CARD, ensure_ascii=False)

        try:
            response = self._client.responses.create(
                **self._request_kwargs(prompt, with_temperature=True)
            )
        except Exception as exc:
            if not self._rejects_temperature(exc):
                raise
            # temperature 非対応モデル（推論系）向けに外して一度だけ送り直す
            logger.info("llm_openai_retry_without_temperature", model=self._model)
            response = self._client.responses.create(
                **self._request_kwargs(prompt, with_temperature=False)
            )
        text = self._response_text(response)
        logger.info(
            "llm_openai_result",
            model=self._model,
            content_chars=len(text),
            content_sha256=hashlib.sha256(text.encode("utf-8", errors="ignore")).hexdigest(),
        )
        return text


def classify_llm_error(exc: BaseException | None) -> str:
    """Map an exception to TIMEOUT / RATE_LIMIT / AUTH / UNKNOWN."""

    if exc is None:
        return "UNKNOWN"
    if isinstance(exc, FuturesTimeout):
        return "TIMEOUT"
    message = str(exc).lower()
    type_name = type(exc).__name__.lower()
    for reason_code, message_needles, type_needles in _REASON_RULES:
        if any(needle in message for needle in message_needles):
            return reason_code
        if any(needle in type_name for needle in type_needles):
            return reason_code
    return "UNKNOWN"


class LLMCallError(RuntimeError):
    """All attempts failed. `reason_code` is what the API reports to the client."""

    def __init__(self, message: str, *, reason_code: str) -> None:
        super().__init__(message)
        self.reason_code = reason_code


class _PolicyLLM(_LLMBase):
    """Run the inner client on the shared executor with a per-attempt timeout."""

    def __init__(self, inner: _LLMBase) -> None:
        self._inner = inner

    def _attempt(self, prompt: str) -> str:
        # structlog の contextvars（request_id）をワーカースレッドへ引き継ぐ
        context = contextvars.copy_context()
        future = _get_llm_executor().submit(context.run, self._inner.complete, prompt)
        try:
            return future.result(timeout=settings.llm_timeout_ms / 1000.0)
        except BaseException:
            future.cancel()
            raise

    def complete(self, prompt: str) -> str:
        attempts = max(1, settings.llm_max_retries)
        failure: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return self._attempt(prompt)
            except Exception as exc:
                failure = exc
                logger.warning(
                    "llm_attempt_failed",
                    attempt=attempt,
                    attempts=attempts,
                    error_type=type(exc).__name__,
                    reason_code=classify_llm_error(exc),
                )
            if attempt < attempts:
                time.sleep(_BACKOFF_STEP_SECONDS * attempt)

        reason_code = classify_llm_error(failure)
        logger.error(
            "llm_attempts_exhausted",
            attempts=attempts,
            reason_code=reason_code,
            error_type=type(failure).__name__,
        )
        raise LLMCallError(
            f"LLM call failed after {attempts} attempt(s): {str(failure)[:256]}",
            reason_code=reason_code,
        ) from failure


def _llm_with_policy(llm: _LLMBase) -> _LLMBase:
    return _PolicyLLM(llm)


def _unusable_configuration(provider: str) -> str | None:
    """Return why OpenAI cannot be used with the current settings, or None."""

    if provider in {"", "local"}:
        return "local_provider"
    if provider != "openai":
        return "unknown_provider"
    if not settings.openai_api_key:
        return "missing_api_key"
    return None


_STRICT_MODE_MESSAGES = {
    "local_provider": "LLM_PROVIDER must be 'openai' in strict mode",
    "unknown_provider": "Unknown LLM provider: {provider}",
    "missing_api_key": "OPENAI_API_KEY is required for LLM_PROVIDER=openai (strict mode)",
}


def get_llm_provider() -> _LLMBase:
    """Return the policy-wrapped client for the current settings.

    プロセス内で1つのクライアントを共有する。
    strict モードで設定が不完全なら RuntimeError、非 strict ではローカル
    フォールバックを返す。
    """

    cached = _get_llm_instance()
    if cached is not None:
        return cached

    provider = (settings.llm_provider or "").strip().lower()
    problem = _unusable_configuration(provider)
    if problem is not None:
        if settings.strict_mode:
            raise RuntimeError(_STRICT_MODE_MESSAGES[problem].format(provider=provider))
        logger.warning("llm_provider_fallback", provider="local", reason=problem)
        client = _llm_with_policy(_LocalFallbackLLM())
    else:
        logger.info("llm_provider_select", provider="openai", model=settings.llm_model)
        client = _llm_with_policy(
            _OpenAIResponsesLLM(
                api_key=str(settings.openai_api_key),
                model=settings.llm_model,
                temperature=settings.llm_temperature,
                max_output_tokens=settings.llm_max_tokens,
            )
        )

    _set_llm_instance(client)
    return client


def shutdown_providers() -> None:
    """共有スレッドプールとクライアントのキャッシュを破棄する。"""

    _shutdown_state()
