from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from datetime import UTC, datetime
from typing import Any


def normalize_non_negative_int(value: Any) -> int:
    """与えられた値を非負整数に正規化する。

    復習回数や作成数のカウンタは、壊れたデータや旧形式のドキュメントで
    負値・文字列が入っていても 0 以上の整数として扱う。"""

    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        return 0
    return ivalue if ivalue >= 0 else 0


def coerce_datetime(value: Any) -> datetime | None:
    """Firestore の Timestamp / datetime / ISO 文字列を UTC aware datetime にそろえる。"""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        to_datetime = getattr(value, "to_datetime", None)
        if not callable(to_datetime):
            return None
        parsed = to_datetime()
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def normalize_tags(tags: Iterable[Any] | None) -> list[str]:
    """タグを前後空白除去・重複排除した順序付きリストへ変換する。"""

    normalised: list[str] = []
    seen: set[str] = set()
    for tag in tags or []:
        if not isinstance(tag, str):
            continue
        trimmed = tag.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        normalised.append(trimmed)
    return normalised


def coerce_firestore_snapshot(candidate: Any) -> Any | None:
    """Normalize Firestore transaction.get results (snapshot or generator) into a snapshot."""

    if candidate is None:
        return None
    if hasattr(candidate, "exists"):
        return candidate
    if isinstance(candidate, Iterator):
        return next(candidate, None)
    if isinstance(candidate, Iterable) and not isinstance(candidate, (str, bytes, Mapping)):
        return next(iter(candidate), None)
    return None
