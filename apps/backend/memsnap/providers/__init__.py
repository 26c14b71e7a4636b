"""LLM プロバイダー層。クライアントのシングルトンと呼び出し用スレッドプールを保持する。"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any

_LLM_WORKERS = 4


class _ProviderState:
    """Process-wide LLM client and the executor used for timeout-bounded calls.

    executor は初回利用時に作り、shutdown 後に再利用されたら作り直す
    （同一プロセスでアプリを再生成するテストのため）。
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.llm: Any | None = None
        self._executor: ThreadPoolExecutor | None = None

    def executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=_LLM_WORKERS, thread_name_prefix="memsnap-llm"
                )
            return self._executor

    def shutdown(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
            self.llm = None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)


_state = _ProviderState()


def _get_llm_instance() -> Any | None:
    return _state.llm


def _set_llm_instance(instance: Any | None) -> None:
    """Replace the cached client; tests reset it with None."""

    _state.llm = instance


def _get_llm_executor() -> ThreadPoolExecutor:
    return _state.executor()


def _shutdown_state() -> None:
    _state.shutdown()


from .llm import get_llm_provider, shutdown_providers  # noqa: E402

__all__ = [
    "get_llm_provider",
    "shutdown_providers",
]
