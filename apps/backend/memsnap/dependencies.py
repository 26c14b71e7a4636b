"""ルーター共通の FastAPI 依存関係（時計・スケジューラ設定・生成 Flow）。

テストでは `app.dependency_overrides` で差し替えて時刻や LLM を固定する。
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

from .config import settings
from .flows.snapshot_generate import SnapshotGenerationFlow
from .srs import SchedulerPolicy, resolve_policy

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


def get_clock() -> Clock:
    return _utc_now


def get_scheduler_policy() -> SchedulerPolicy:
    return resolve_policy(settings)


def get_generation_flow() -> SnapshotGenerationFlow:
    return SnapshotGenerationFlow()
