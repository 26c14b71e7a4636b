"""ReviewState / Snapshot / UserProfile と保存用ドキュメント(dict)の相互変換。

日時は Firestore ネイティブの Timestamp（マイクロ秒精度）として保存し、
interval は float のまま保持する。旧データの ISO 文字列も読み取れる。
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from ..models.snapshot import Snapshot
from ..models.user import UserProfile, UserStats
from ..srs import DEFAULT_POLICY, ReviewState, clamp_ease, days_to_timedelta
from .common import coerce_datetime, normalize_non_negative_int, normalize_tags

_CONTENT_FIELDS = ("question", "answer", "summary", "analogy", "mnemonic")


def encode_review_state(state: ReviewState) -> dict[str, Any]:
    return {
        "last_review_date": state.last_review_date,
        "next_review_date": state.next_review_date,
        "interval": float(state.interval),
        "ease_factor": float(state.ease_factor),
        "review_count": int(state.review_count),
    }


def decode_review_state(payload: Mapping[str, Any] | None, *, fallback: datetime) -> ReviewState:
    """保存済みの復習状態を復元する。

    欠損や型崩れがあっても例外にせず、ease は範囲内へ丸め、
    next_review_date が無ければ last_review_date + interval で補う。
    """

    data = payload or {}
    try:
        interval = max(0.0, float(data.get("interval", 0.0)))
    except (TypeError, ValueError):
        interval = 0.0
    try:
        ease = clamp_ease(float(data.get("ease_factor", DEFAULT_POLICY.default_ease)))
    except (TypeError, ValueError):
        ease = DEFAULT_POLICY.default_ease
    last_review = coerce_datetime(data.get("last_review_date")) or fallback
    next_review = coerce_datetime(data.get("next_review_date")) or (
        last_review + days_to_timedelta(interval)
    )
    return ReviewState(
        last_review_date=last_review,
        next_review_date=next_review,
        interval=interval,
        ease_factor=ease,
        review_count=normalize_non_negative_int(data.get("review_count", 0)),
    )


def encode_snapshot(snapshot: Snapshot) -> dict[str, Any]:
    document: dict[str, Any] = {
        "user_id": snapshot.user_id,
        "original_text": snapshot.original_text,
        "tags": list(snapshot.tags),
        "has_audio": bool(snapshot.has_audio),
        "created_at": snapshot.created_at,
        "review": encode_review_state(snapshot.review),
    }
    for field in _CONTENT_FIELDS:
        document[field] = getattr(snapshot, field)
    return document


def decode_snapshot(snapshot_id: str, data: Mapping[str, Any]) -> Snapshot:
    created_at = coerce_datetime(data.get("created_at")) or datetime.now(UTC)
    content = {field: str(data.get(field) or "") for field in _CONTENT_FIELDS}
    return Snapshot(
        id=snapshot_id,
        user_id=str(data.get("user_id") or ""),
        original_text=str(data.get("original_text") or ""),
        tags=normalize_tags(data.get("tags")),
        has_audio=bool(data.get("has_audio", False)),
        created_at=created_at,
        review=decode_review_state(data.get("review"), fallback=created_at),
        **content,
    )


def encode_user(profile: UserProfile) -> dict[str, Any]:
    return {
        "email": profile.email,
        "display_name": profile.display_name,
        "created_at": profile.created_at,
        "interest": profile.interest,
        "stats": {
            "total_snapshots": profile.stats.total_snapshots,
            "streak_days": profile.stats.streak_days,
            "last_active_date": profile.stats.last_active_date,
        },
    }


def decode_user(user_id: str, data: Mapping[str, Any]) -> UserProfile:
    raw_stats = data.get("stats")
    stats = raw_stats if isinstance(raw_stats, Mapping) else {}
    interest = str(data.get("interest") or "").strip() or None
    return UserProfile(
        id=user_id,
        email=str(data.get("email") or ""),
        display_name=str(data.get("display_name") or ""),
        created_at=coerce_datetime(data.get("created_at")) or datetime.now(UTC),
        interest=interest,
        stats=UserStats(
            total_snapshots=normalize_non_negative_int(stats.get("total_snapshots", 0)),
            streak_days=normalize_non_negative_int(stats.get("streak_days", 0)),
            last_active_date=coerce_datetime(stats.get("last_active_date")),
        ),
    )
