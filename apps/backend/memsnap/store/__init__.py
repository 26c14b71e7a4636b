"""Snapshot / user persistence.

Signed-in users live in Firestore (`AppFirestoreStore`); guests get a private
`InMemorySnapshotStore` handed out by `GuestStoreRegistry`.
"""

from __future__ import annotations

import os

from google.cloud import firestore

from ..config import settings
from ..logging import logger
from .base import SnapshotNotFoundError, SnapshotStore, StoreError
from .firestore_store import AppFirestoreStore
from .memory_store import GuestStoreRegistry, InMemorySnapshotStore

_LOCAL_EMULATOR = "127.0.0.1:8080"
_SCHEMES = ("http://", "https://")


def _normalize_emulator_host(raw_host: str | None) -> str | None:
    """`localhost:8080` → `http://localhost:8080`。空なら None。"""

    host = (raw_host or "").strip()
    if not host:
        return None
    return host if host.startswith(_SCHEMES) else f"http://{host}"


def _emulator_endpoint() -> str | None:
    # production 以外ではホスト未指定でもローカルのエミュレータを使う
    configured = settings.firestore_emulator_host or os.environ.get("FIRESTORE_EMULATOR_HOST")
    if not configured and (settings.environment or "").strip().lower() != "production":
        configured = _LOCAL_EMULATOR
    return _normalize_emulator_host(configured)


def _build_firestore_client() -> firestore.Client:
    project_id = settings.firestore_project_id or settings.gcp_project_id
    endpoint = _emulator_endpoint()
    if endpoint is None:
        return firestore.Client(project=project_id)

    bare_host = endpoint.split("://", 1)[1]
    # 環境変数があるとクライアントは匿名認証でエミュレータへ接続する
    os.environ.setdefault("FIRESTORE_EMULATOR_HOST", bare_host)
    return firestore.Client(project=project_id, client_options={"api_endpoint": endpoint})


def create_store() -> AppFirestoreStore:
    store = AppFirestoreStore(client=_build_firestore_client())
    logger.info(
        "firestore_store_created",
        project_id=settings.firestore_project_id or settings.gcp_project_id,
        emulator=_emulator_endpoint() is not None,
    )
    return store


def create_guest_registry() -> GuestStoreRegistry:
    return GuestStoreRegistry(
        ttl_seconds=settings.guest_session_max_age_seconds,
        max_sessions=settings.guest_store_max_sessions,
    )


__all__ = [
    "AppFirestoreStore",
    "GuestStoreRegistry",
    "InMemorySnapshotStore",
    "SnapshotNotFoundError",
    "SnapshotStore",
    "StoreError",
    "create_guest_registry",
    "create_store",
]
