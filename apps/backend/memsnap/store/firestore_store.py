from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from google.api_core import exceptions as gexc
from google.cloud import firestore

from ..logging import logger
from ..models.snapshot import Snapshot, SnapshotDraft
from ..models.user import UserProfile, UserStats
from ..srs import Difficulty, ReviewState, SchedulerPolicy, compute_next_review, is_due
from ..stats import record_activity
from .base import SnapshotNotFoundError, StoreError
from .codec import (
    decode_snapshot,
    decode_user,
    encode_review_state,
    encode_snapshot,
    encode_user,
)
from .common import coerce_firestore_snapshot

T = TypeVar("T")


class FirestoreBaseStore:
    """Firestore クライアント共通のヘルパー。"""

    def __init__(self, client: firestore.Client):
        self._client = client

    def _run_in_transaction(self, operation: str, body: Callable[[Any], T]) -> T:
        """`body(transaction)` を1トランザクションで実行する。

        失敗時はロールバックして StoreError を送出する。書き込みは commit 時のみ
        反映されるため、途中で失敗しても保存済みの状態がそのまま残る。
        """

        transaction = self._client.transaction()
        try:
            transaction._begin()
        except (ValueError, gexc.GoogleAPIError) as exc:
            logger.warning(
                "firestore_transaction_failed",
                operation=operation,
                error=str(exc),
                error_class=exc.__class__.__name__,
                stage="begin",
            )
            raise StoreError(f"{operation}: could not begin transaction") from exc

        try:
            result = body(transaction)
            transaction._commit()
            return result
        except StoreError:
            transaction._rollback()
            raise
        except (ValueError, gexc.GoogleAPIError) as exc:
            try:
                transaction._rollback()
            except (ValueError, gexc.GoogleAPIError):  # pragma: no cover - rollback best-effort
                logger.warning("firestore_rollback_failed", operation=operation)
            logger.warning(
                "firestore_transaction_failed",
                operation=operation,
                error=str(exc),
                error_class=exc.__class__.__name__,
                stage="body",
            )
            raise StoreError(f"{operation}: transaction failed") from exc
        except Exception:
            transaction._rollback()
            raise


class FirestoreUserStore(FirestoreBaseStore):
    """Firestore 上のユーザードキュメント（プロフィールと学習統計）を管理する。"""

    def __init__(self, client: firestore.Client):
        super().__init__(client)
        self._users = client.collection("users")

    def record_user_login(
        self,
        *,
        user_id: str,
        email: str,
        display_name: str,
        login_at: datetime,
    ) -> UserProfile:
        """ログイン情報を upsert し、保存結果を返す。

        Google 側のプロフィールは随時変化するため、subject をキーとして
        メールアドレスと表示名は毎回上書きし、統計は初回のみ初期化する。"""

        doc_ref = self._users.document(user_id)
        snapshot = doc_ref.get()
        if snapshot.exists:
            doc_ref.update(
                {
                    "email": email,
                    "display_name": display_name,
                    "last_login_at": login_at,
                }
            )
        else:
            profile = UserProfile(
                id=user_id, email=email, display_name=display_name, created_at=login_at
            )
            doc_ref.set({**encode_user(profile), "last_login_at": login_at})
        user = self.get_user(user_id)
        if user is None:  # pragma: no cover - defensive fallback
            raise StoreError("failed to persist user login")
        return user

    def get_user(self, user_id: str) -> UserProfile | None:
        snapshot = self._users.document(user_id).get()
        if not snapshot.exists:
            return None
        return decode_user(user_id, snapshot.to_dict() or {})

    def ensure_user(
        self,
        user_id: str,
        *,
        now: datetime,
        email: str = "",
        display_name: str = "",
    ) -> UserProfile:
        existing = self.get_user(user_id)
        if existing is not None:
            return existing
        profile = UserProfile(id=user_id, email=email, display_name=display_name, created_at=now)
        self._users.document(user_id).set(encode_user(profile))
        return profile

    def update_user_interest(self, user_id: str, interest: str | None) -> UserProfile:
        normalized = (interest or "").strip() or None
        profile = self.ensure_user(user_id, now=datetime.now(UTC))
        self._users.document(user_id).update({"interest": normalized})
        return profile.model_copy(update={"interest": normalized})

    def _update_stats(
        self,
        transaction: Any,
        user_id: str,
        now: datetime,
        *,
        created_delta: int = 0,
    ) -> UserStats:
        """トランザクション内でユーザー統計を読み出し、活動を記録して書き戻す。"""

        doc_ref = self._users.document(user_id)
        snapshot = coerce_firestore_snapshot(transaction.get(doc_ref))
        if snapshot is None or not snapshot.exists:
            profile = UserProfile(id=user_id, created_at=now)
            base = profile.stats
        else:
            profile = decode_user(user_id, snapshot.to_dict() or {})
            base = profile.stats
        stats = record_activity(base, now)
        stats = stats.model_copy(
            update={"total_snapshots": max(0, stats.total_snapshots + created_delta)}
        )
        payload = encode_user(profile.model_copy(update={"stats": stats}))
        transaction.set(doc_ref, payload, merge=True)
        return stats

    def _adjust_total_snapshots(self, transaction: Any, user_id: str, delta: int) -> None:
        """total_snapshots だけを増減する（活動日やストリークは変えない）。"""

        doc_ref = self._users.document(user_id)
        snapshot = coerce_firestore_snapshot(transaction.get(doc_ref))
        if snapshot is None or not snapshot.exists:
            return
        profile = decode_user(user_id, snapshot.to_dict() or {})
        stats = profile.stats.model_copy(
            update={"total_snapshots": max(0, profile.stats.total_snapshots + delta)}
        )
        payload = encode_user(profile.model_copy(update={"stats": stats}))
        transaction.update(doc_ref, {"stats": payload["stats"]})


class FirestoreSnapshotStore(FirestoreBaseStore):
    """スナップショット（学習カード）と復習状態を Firestore で管理する。"""

    def __init__(self, client: firestore.Client, users: FirestoreUserStore):
        super().__init__(client)
        self._snapshots = client.collection("snapshots")
        self._users = users

    def _owned(self, user_id: str, snapshot: Any) -> Snapshot | None:
        if snapshot is None or not snapshot.exists:
            return None
        data = snapshot.to_dict() or {}
        if data.get("user_id") != user_id:
            return None
        return decode_snapshot(snapshot.id, data)

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
        doc_ref = self._snapshots.document(snapshot.id)

        def _create(transaction: Any) -> None:
            # 読み取りを書き込みより先に行う（Firestore トランザクションの制約）
            self._users._update_stats(transaction, user_id, created_at, created_delta=1)
            transaction.set(doc_ref, encode_snapshot(snapshot))

        self._run_in_transaction("create_snapshot", _create)
        logger.info("snapshot_created", snapshot_id=snapshot.id, user_id=user_id)
        return snapshot

    def get_snapshot(self, user_id: str, snapshot_id: str) -> Snapshot | None:
        return self._owned(user_id, self._snapshots.document(snapshot_id).get())

    def list_snapshots(self, user_id: str) -> list[Snapshot]:
        """ユーザーのスナップショットを作成日時の新しい順で返す。

        複合インデックスを要求しないよう、並び替えはクライアント側で行う。"""

        query = self._snapshots.where("user_id", "==", user_id)
        items = [decode_snapshot(doc.id, doc.to_dict() or {}) for doc in query.stream()]
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
        doc_ref = self._snapshots.document(snapshot_id)

        def _review(transaction: Any) -> Snapshot:
            current = self._owned(
                user_id, coerce_firestore_snapshot(transaction.get(doc_ref))
            )
            if current is None:
                raise SnapshotNotFoundError(snapshot_id)
            self._users._update_stats(transaction, user_id, now)
            review = compute_next_review(current.review, difficulty, now, policy)
            transaction.update(doc_ref, {"review": encode_review_state(review)})
            return current.model_copy(update={"review": review})

        updated = self._run_in_transaction("apply_review", _review)
        logger.info(
            "snapshot_reviewed",
            snapshot_id=snapshot_id,
            difficulty=Difficulty(difficulty).value,
            review_count=updated.review.review_count,
            interval=updated.review.interval,
        )
        return updated

    def delete_snapshot(self, user_id: str, snapshot_id: str) -> bool:
        doc_ref = self._snapshots.document(snapshot_id)

        def _delete(transaction: Any) -> bool:
            current = self._owned(
                user_id, coerce_firestore_snapshot(transaction.get(doc_ref))
            )
            if current is None:
                return False
            self._users._adjust_total_snapshots(transaction, user_id, -1)
            transaction.delete(doc_ref)
            return True

        deleted = self._run_in_transaction("delete_snapshot", _delete)
        if deleted:
            logger.info("snapshot_deleted", snapshot_id=snapshot_id, user_id=user_id)
        return deleted


class AppFirestoreStore:
    """Firestore 版のアプリ永続化ストア。"""

    def __init__(self, *, client: firestore.Client | None = None) -> None:
        self._client = client or firestore.Client()
        self.users = FirestoreUserStore(self._client)
        self.snapshots = FirestoreSnapshotStore(self._client, self.users)

    # --- Users ---
    def record_user_login(
        self,
        *,
        user_id: str,
        email: str,
        display_name: str,
        login_at: datetime,
    ) -> UserProfile:
        return self.users.record_user_login(
            user_id=user_id,
            email=email,
            display_name=display_name,
            login_at=login_at,
        )

    def get_user(self, user_id: str) -> UserProfile | None:
        return self.users.get_user(user_id)

    def ensure_user(
        self,
        user_id: str,
        *,
        now: datetime,
        email: str = "",
        display_name: str = "",
    ) -> UserProfile:
        return self.users.ensure_user(user_id, now=now, email=email, display_name=display_name)

    def update_user_interest(self, user_id: str, interest: str | None) -> UserProfile:
        return self.users.update_user_interest(user_id, interest)

    # --- Snapshots ---
    def create_snapshot(
        self,
        user_id: str,
        draft: SnapshotDraft,
        *,
        review: ReviewState,
        created_at: datetime,
    ) -> Snapshot:
        return self.snapshots.create_snapshot(
            user_id, draft, review=review, created_at=created_at
        )

    def get_snapshot(self, user_id: str, snapshot_id: str) -> Snapshot | None:
        return self.snapshots.get_snapshot(user_id, snapshot_id)

    def list_snapshots(self, user_id: str) -> list[Snapshot]:
        return self.snapshots.list_snapshots(user_id)

    def list_due_snapshots(self, user_id: str, now: datetime) -> list[Snapshot]:
        return self.snapshots.list_due_snapshots(user_id, now)

    def apply_review(
        self,
        user_id: str,
        snapshot_id: str,
        difficulty: Difficulty,
        *,
        now: datetime,
        policy: SchedulerPolicy,
    ) -> Snapshot:
        return self.snapshots.apply_review(
            user_id, snapshot_id, difficulty, now=now, policy=policy
        )

    def delete_snapshot(self, user_id: str, snapshot_id: str) -> bool:
        return self.snapshots.delete_snapshot(user_id, snapshot_id)
