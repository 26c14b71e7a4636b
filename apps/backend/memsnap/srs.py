"""Spaced-repetition scheduling (SM-2 family).

学習カード（スナップショット）1件ごとの復習状態 `ReviewState` と、
難易度評価から次回復習時刻を求める純粋関数群を提供する。I/O や時計への
依存は持たず、現在時刻は呼び出し側が `now` として渡す。

間隔は「日」単位の浮動小数で保持し（0.0007日 ≒ 1分）、日付計算は
カレンダー日ではなくミリ秒の経過時間として行う。
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

_MS_PER_DAY = 24 * 60 * 60 * 1000
_MINUTE = 1 / (24 * 60)


class Difficulty(str, Enum):
    """Self-reported recall difficulty."""

    hard = "hard"
    medium = "medium"
    easy = "easy"


@dataclass(frozen=True)
class ReviewState:
    """Immutable review state owned by a single learning item."""

    last_review_date: datetime
    next_review_date: datetime
    interval: float
    ease_factor: float
    review_count: int = 0


@dataclass(frozen=True)
class SchedulerPolicy:
    """Tunable constants of the scheduler.

    - first_review_intervals / second_review_intervals: (hard, medium, easy) in days
    - min_interval_days: lower bound of mature intervals (the Hard floor)
    - max_interval_days: upper bound of mature intervals; keeps `now + interval` representable
    """

    name: str
    initial_interval_days: float
    first_review_intervals: tuple[float, float, float]
    second_review_intervals: tuple[float, float, float]
    min_interval_days: float
    max_interval_days: float = 36500.0
    hard_damping: float = 0.5
    medium_damping: float = 0.8
    default_ease: float = 2.5
    min_ease: float = 1.3
    max_ease: float = 2.5

    def warmup_interval(self, review_count: int, difficulty: Difficulty) -> float:
        table = self.first_review_intervals if review_count == 0 else self.second_review_intervals
        hard, medium, easy = table
        return {Difficulty.hard: hard, Difficulty.medium: medium, Difficulty.easy: easy}[difficulty]


DAY_SCALE_POLICY = SchedulerPolicy(
    name="day",
    initial_interval_days=10 * _MINUTE,
    first_review_intervals=(0.1, 0.5, 1.0),
    second_review_intervals=(1.0, 3.0, 5.0),
    min_interval_days=1.0,
)

MINUTE_SCALE_POLICY = SchedulerPolicy(
    name="minute",
    initial_interval_days=1 * _MINUTE,
    first_review_intervals=(1 * _MINUTE, 5 * _MINUTE, 10 * _MINUTE),
    second_review_intervals=(5 * _MINUTE, 15 * _MINUTE, 30 * _MINUTE),
    min_interval_days=1 * _MINUTE,
)

POLICIES: dict[str, SchedulerPolicy] = {
    DAY_SCALE_POLICY.name: DAY_SCALE_POLICY,
    MINUTE_SCALE_POLICY.name: MINUTE_SCALE_POLICY,
}

DEFAULT_POLICY = DAY_SCALE_POLICY

_EASE_DELTAS: dict[Difficulty, float] = {
    Difficulty.easy: 0.15,
    Difficulty.medium: -0.05,
    Difficulty.hard: -0.20,
}


def get_policy(name: str) -> SchedulerPolicy:
    """名前からプリセットを引く。未知の名前は ValueError。"""

    try:
        return POLICIES[name]
    except KeyError:
        raise ValueError(f"unknown scheduler policy: {name!r}") from None


def resolve_policy(config: Any) -> SchedulerPolicy:
    """Build the effective policy from settings (preset + per-constant overrides)."""

    name = getattr(config, "srs_policy", None) or DEFAULT_POLICY.name
    policy = get_policy(name)
    overrides: dict[str, Any] = {}
    initial = getattr(config, "srs_initial_interval_days", None)
    if initial is not None:
        overrides["initial_interval_days"] = float(initial)
    first = getattr(config, "srs_first_review_intervals", None)
    if first:
        overrides["first_review_intervals"] = tuple(float(v) for v in first)
    second = getattr(config, "srs_second_review_intervals", None)
    if second:
        overrides["second_review_intervals"] = tuple(float(v) for v in second)
    floor = getattr(config, "srs_min_interval_days", None)
    if floor is not None:
        overrides["min_interval_days"] = float(floor)
    cap = getattr(config, "srs_max_interval_days", None)
    if cap is not None:
        overrides["max_interval_days"] = float(cap)
    effective = replace(policy, **overrides) if overrides else policy
    if effective.max_interval_days < effective.min_interval_days:
        raise ValueError(
            f"max_interval_days ({effective.max_interval_days}) must not be below "
            f"min_interval_days ({effective.min_interval_days})"
        )
    return effective


def days_to_timedelta(days: float) -> timedelta:
    """Convert fractional days into an exact millisecond duration.

    正の値は最低 1 ミリ秒に切り上げ、次回時刻が必ず now より後になるようにする。
    """

    milliseconds = round(days * _MS_PER_DAY)
    if days > 0:
        milliseconds = max(1, milliseconds)
    return timedelta(milliseconds=milliseconds)


def clamp_ease(value: float, policy: SchedulerPolicy = DEFAULT_POLICY) -> float:
    return max(policy.min_ease, min(policy.max_ease, float(value)))


def initialize(
    now: datetime | None = None, policy: SchedulerPolicy = DEFAULT_POLICY
) -> ReviewState:
    """Return the review state of a freshly created item.

    作成直後の短いウォームアップ後に最初の復習が来るよう、
    `next_review_date = now + initial_interval_days` とする。
    """

    created_at = now or datetime.now(UTC)
    interval = policy.initial_interval_days
    return ReviewState(
        last_review_date=created_at,
        next_review_date=created_at + days_to_timedelta(interval),
        interval=interval,
        ease_factor=policy.default_ease,
        review_count=0,
    )


def is_due(state: ReviewState, now: datetime) -> bool:
    """True when `now` has reached `next_review_date` (inclusive)."""

    return now >= state.next_review_date


def compute_next_review(
    state: ReviewState,
    difficulty: Difficulty,
    now: datetime,
    policy: SchedulerPolicy = DEFAULT_POLICY,
) -> ReviewState:
    """Compute the state after a review rated `difficulty` at `now`.

    1. ease を難易度で調整し [min_ease, max_ease] に収める（保存値が範囲外でも先に丸める）
    2. review_count 0/1 は固定テーブル、2以上は `interval * ease` に難易度別の減衰
       （[min_interval_days, max_interval_days] に収める）
    3. 次回時刻は now + interval（ミリ秒精度）
    """

    difficulty = Difficulty(difficulty)
    ease = clamp_ease(clamp_ease(state.ease_factor, policy) + _EASE_DELTAS[difficulty], policy)
    review_count = max(0, int(state.review_count))

    if review_count < 2:
        next_interval = policy.warmup_interval(review_count, difficulty)
    else:
        next_interval = max(0.0, float(state.interval)) * ease
        if difficulty is Difficulty.hard:
            next_interval *= policy.hard_damping
        elif difficulty is Difficulty.medium:
            next_interval *= policy.medium_damping
        # 同一の上下限を全難易度へ適用して Hard <= Medium <= Easy を保つ
        next_interval = min(max(next_interval, policy.min_interval_days), policy.max_interval_days)

    return ReviewState(
        last_review_date=now,
        next_review_date=now + days_to_timedelta(next_interval),
        interval=next_interval,
        ease_factor=ease,
        review_count=review_count + 1,
    )
