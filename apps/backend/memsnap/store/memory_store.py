"""プロセス内メモリに保持するストア（ゲストセッション用）。

ゲスト1セッションにつき1インスタンスを割り当て、他セッションとは
データを共有しない。プロセス再起動やログアウトで内容は失われる。
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from ..logging import logger
from ..models.snapshot import Snapshot, SnapshotDraft
from ..models.user import UserProfile
from ..srs import Difficulty, ReviewState, SchedulerPolicy, compute_next_review, is_due
from ..stats import record_activity
from .base import SnapshotNotFoundError


class InMemorySnapshotStore:
    """SnapshotStore implementation backed by dictionaries guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: dict[str, UserProfile] = {}
        self._snapshots: dict[str, Snapshot] = {}

    # --- Users ---
    def record_user_login(
        self,
        *,
        user_id: str,
        email: str,
        display_name: str,
        login_at: datetime,
    ) -> UserProfile:
        with self._lock:
            existing = self._users.get(user_id)
            if existing is None:
                profile = UserProfile(
                    id=user_id, email=email, display_name=display_name, created_at=login_at
                )
            else:
                profile = existing.model_copy(update={"email": email, "display_name": display_name})
            self._users[user_id] = profile
            return profile

    def get_user(self, user_id: str) -> UserProfile | None:
        with self._lock:
            return self._users.get(user_id)

    def _ensure_user_locked(
        self, user_id: str, now: datetime, email: str = "", display_name: str = ""
    ) -> UserProfile:
        profile = self._users.get(user_id)
        if profile is None:
            profile = UserProfile(id=user_id, email=email, display_name=display_name, created_at=now)
            self._users[user_id] = profile
        return profile

    def ensure_user(
        self,
        user_id: str,
        *,
        now: datetime,
        email: str = "",
        display_name: str = "",
    ) -> UserProfile:
        with self._lock:
            return self._ensure_user_locked(user_id, now, email, display_name)

    def update_user_interest(self, user_id: str, interest: str | None) -> UserProfile:
        normalized = (interest or "").strip() or None
        with self._lock:
            profile = self._ensure_user_locked(user_id, datetime.now(UTC))
            updated = profile.model_copy(update={"interest": normalized})
            self._users[user_id] = updated
            return updated

    def _record_activity_locked(self, user_id: str, now: datetime, created_delta: int = 0) -> None:
        profile = self._ensure_user_locked(user_id, now)
        stats = record_activity(profile.stats, now)
        stats = stats.model_copy(
            update={"total_snapshots": max(0, stats.total_snapshots + created_delta)}
        )
        self._users[user_id] = profile.model_copy(update={"stats": stats})

    # --- Snapshots ---
    def create_snapshot(
        self,
        user_id: str,
        draft: SnapshotDraft,
        *,
        review: ReviewState,
        created_at: datetime,
    ) -> Snapshot:
        snapshot = Snapshot(
            id=uuid.uuid4().hex,
            user_id=user_id,
            created_at=created_at,
            review=review,
            **draft.model_dump(),
        )
        with self._lock:
            self._snapshots[snapshot.id] = snapshot
            self._record_activity_locked(user_id, created_at, created_delta=1)
        return snapshot

    def get_snapshot(self, user_id: str, snapshot_id: str) -> Snapshot | None:
        with self._lock:
            snapshot = self._snapshots.get(snapshot_id)
        if snapshot is None or snapshot.user_id != user_id:
            return None
        return snapshot

    def list_snapshots(self, user_id: str) -> list[Snapshot]:
        with self._lock:
            items = [item for item in self._snapshots.values() if item.user_id == user_id]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items

    def list_due_snapshots(self, user_id: str, now: datetime) -> list[Snapshot]:
        due = [item for item in self.list_snapshots(user_id) if is_due(item.review, now)]
        due.sort(key=lambda item: item.review.next_review_date)
        return due

    def apply_review(
        self,
        user_id: str,
        snapshot_id: str,
        difficulty: Difficulty,
        *,
        now: datetime,
        policy: SchedulerPolicy,
    ) -> Snapshot:
        with self._lock:
            current = self._snapshots.get(snapshot_id)
            if current is None or current.user_id != user_id:
                raise SnapshotNotFoundError(snapshot_id)
            review = compute_next_review(current.review, difficulty, now, policy)
            updated = current.model_copy(update={"review": review})
            self._snapshots[snapshot_id] = updated
            self._record_activity_locked(user_id, now)
        return updated

    def delete_snapshot(self, user_id: str, snapshot_id: str) -> bool:
        with self._lock:
            current = self._snapshots.get(snapshot_id)
            if current is None or current.user_id != user_id:
                return False
            del self._snapshots[snapshot_id]
            profile = self._users.get(user_id)
            if profile is not None:
                stats = profile.stats.model_copy(
                    update={"total_snapshots": max(0, profile.stats.total_snapshots - 1)}
                )
                self._users[user_id] = profile.model_copy(update={"stats": stats})
        return True


@dataclass
class _TrackedStore:
    """Bundle a guest store with its last access timestamp for eviction control."""

    store: InMemorySnapshotStore
    last_seen: float


class GuestStoreRegistry:
    """ゲストセッションIDごとに InMemorySnapshotStore を払い出す。

    最終アクセス時刻を追跡し、TTL を過ぎたセッションと上限超過分
    （最も古いもの）から順に破棄してメモリ使用量を抑える。
    """

    def __init__(
        self,
        *,
        ttl_seconds: float,
        max_sessions: int,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._ttl = max(1.0, float(ttl_seconds))
        self._max_sessions = max(1, int(max_sessions))
        self._stores: OrderedDict[str, _TrackedStore] = OrderedDict()
        self._lock = threading.Lock()
        self._clock = clock or time.monotonic

    def _prune(self, now: float) -> None:
        expired_keys = [
            key for key, entry in self._stores.items() if now - entry.last_seen > self._ttl
        ]
        for key in expired_keys:
            self._stores.pop(key, None)
        if expired_keys:
            logger.info("guest_stores_expired", count=len(expired_keys))
        while len(self._stores) > self._max_sessions:
            # OrderedDict preserves access order; pop the least recently used first.
            evicted, _ = self._stores.popitem(last=False)
            logger.info("guest_store_evicted", guest_id=evicted)

    def get(self, guest_id: str) -> InMemorySnapshotStore:
        """Return the store of `guest_id`, creating an empty one on first use."""

        now = self._clock()
        with self._lock:
            entry = self._stores.get(guest_id)
            if entry is None:
                entry = _TrackedStore(store=InMemorySnapshotStore(), last_seen=now)
                self._stores[guest_id] = entry
            else:
                entry.last_seen = now
                self._stores.move_to_end(guest_id, last=True)
            self._prune(now)
            return entry.store

    def discard(self, guest_id: str) -> bool:
        with self._lock:
            return self._stores.pop(guest_id, None) is not None

    def __contains__(self, guest_id: object) -> bool:
        with self._lock:
            return guest_id in self._stores

    def __len__(self) -> int:
        with self._lock:
            return len(self._stores)
