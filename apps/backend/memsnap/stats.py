"""学習統計（連続学習日数と日別アクティビティ）の計算。"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, timedelta

from .models.snapshot import ActivityPoint, Snapshot
from .models.user import UserStats


def _day_of(value: datetime) -> date:
    return value.date()


def next_streak(previous_streak: int, last_active: datetime | None, now: datetime) -> int:
    """Return the streak after activity at `now`.

    - 同日: 維持（最低1）
    - 前日に活動: +1
    - 2日以上空いた: 1 にリセット
    """

    if last_active is None:
        return 1
    day_diff = (_day_of(now) - _day_of(last_active)).days
    if day_diff == 1:
        return max(0, previous_streak) + 1
    if day_diff > 1:
        return 1
    return max(1, previous_streak)


def record_activity(stats: UserStats, now: datetime) -> UserStats:
    return stats.model_copy(
        update={
            "streak_days": next_streak(stats.streak_days, stats.last_active_date, now),
            "last_active_date": now,
        }
    )


def build_activity(snapshots: Iterable[Snapshot], *, days: int, now: datetime) -> list[ActivityPoint]:
    """Count created and reviewed snapshots per day over the last `days` days.

    復習は最終復習日のみで数える（履歴は保持していないため）。
    """

    today = _day_of(now)
    window = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    created: dict[date, int] = {day: 0 for day in window}
    reviewed: dict[date, int] = {day: 0 for day in window}
    for snapshot in snapshots:
        created_day = _day_of(snapshot.created_at)
        if created_day in created:
            created[created_day] += 1
        if snapshot.review.review_count > 0:
            reviewed_day = _day_of(snapshot.review.last_review_date)
            if reviewed_day in reviewed:
                reviewed[reviewed_day] += 1
    return [
        ActivityPoint(date=day.isoformat(), created=created[day], reviewed=reviewed[day])
        for day in window
    ]
