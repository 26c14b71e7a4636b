from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ..models.snapshot import Snapshot, SnapshotDraft
from ..models.user import UserProfile
from ..srs import Difficulty, ReviewState, SchedulerPolicy


class StoreError(RuntimeError):
    """永続化層の失敗。呼び出し側へそのまま伝播させる。"""


class SnapshotNotFoundError(StoreError):
    """Snapshot does not exist or belongs to another user."""

    def __init__(self, snapshot_id: str) -> None:
        super().__init__(f"snapshot not found: {snapshot_id}")
        self.snapshot_id = snapshot_id


class SnapshotStore(Protocol):
    """Persistence contract shared by the durable and the guest (in-memory) stores."""

    def record_user_login(
        self,
        *,
        user_id: str,
        email: str,
        display_name: str,
        login_at: datetime,
    ) -> UserProfile: ...

    def get_user(self, user_id: str) -> UserProfile | None: ...

    def ensure_user(
        self,
        user_id: str,
        *,
        now: datetime,
        email: str = "",
        display_name: str = "",
    ) -> UserProfile: ...

    def update_user_interest(self, user_id: str, interest: str | None) -> UserProfile: ...

    def create_snapshot(
        self,
        user_id: str,
        draft: SnapshotDraft,
        *,
        review: ReviewState,
        created_at: datetime,
    ) -> Snapshot: ...

    def get_snapshot(self, user_id: str, snapshot_id: str) -> Snapshot | None: ...

    def list_snapshots(self, user_id: str) -> list[Snapshot]: ...

    def list_due_snapshots(self, user_id: str, now: datetime) -> list[Snapshot]: ...

    def apply_review(
        self,
        user_id: str,
        snapshot_id: str,
        difficulty: Difficulty,
        *,
        now: datetime,
        policy: SchedulerPolicy,
    ) -> Snapshot: ...

    def delete_snapshot(self, user_id: str, snapshot_id: str) -> bool: ...
