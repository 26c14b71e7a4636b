"""セッション/ゲストクッキーの発行・検証と、リクエストごとの呼び出し元の解決。"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from fastapi import HTTPException, Request, status
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .config import settings
from .logging import logger
from .store import GuestStoreRegistry, SnapshotStore, create_guest_registry, create_store

SessionKind = Literal["user", "guest", "anonymous"]

_MIN_TOKEN_AGE_SECONDS = 60


@dataclass(frozen=True)
class _TokenKind:
    """One kind of signed cookie: its salt, the payload key holding the id and its lifetime setting."""

    salt: str
    id_key: str
    max_age_setting: str

    def _serializer(self) -> URLSafeTimedSerializer:
        secret = settings.session_secret_key.strip()
        if not secret:
            raise RuntimeError("SESSION_SECRET_KEY is not configured")
        return URLSafeTimedSerializer(secret, salt=self.salt)

    def max_age(self) -> int:
        return max(_MIN_TOKEN_AGE_SECONDS, int(getattr(settings, self.max_age_setting) or 0))

    def issue(self, subject: str) -> str:
        return self._serializer().dumps(
            {
                self.id_key: subject,
                "sid": uuid.uuid4().hex,
                "issued_at": datetime.now(UTC).replace(microsecond=0).isoformat(),
            }
        )

    def load(self, token: str) -> dict[str, Any]:
        """Raise SignatureExpired / BadSignature for stale or forged tokens."""

        payload = self._serializer().loads(token, max_age=self.max_age())
        if not isinstance(payload, dict):
            raise BadSignature("token payload is not an object")
        return payload


_USER_TOKEN = _TokenKind(salt="memsnap.session", id_key="sub", max_age_setting="session_max_age_seconds")
_GUEST_TOKEN = _TokenKind(
    salt="memsnap.guest", id_key="gid", max_age_setting="guest_session_max_age_seconds"
)


def issue_session_token(user_id: str) -> str:
    return _USER_TOKEN.issue(user_id)


def verify_session_token(token: str) -> dict[str, Any]:
    return _USER_TOKEN.load(token)


def issue_guest_session_token() -> tuple[str, str]:
    """(guest_id, token) を返す。"""

    guest_id = uuid.uuid4().hex
    return guest_id, _GUEST_TOKEN.issue(guest_id)


def verify_guest_session_token(token: str) -> str:
    guest_id = _GUEST_TOKEN.load(token).get("gid")
    if not guest_id:
        raise BadSignature("guest payload is missing gid")
    return str(guest_id)


def _session_log_context(
    request: Request, *, reason: str, user_id: str | None
) -> dict[str, object]:
    """アクセスログと同じキーで失敗理由を残し、request_id で突き合わせられるようにする。"""

    return {
        "reason": reason,
        "user_id": user_id,
        "path": request.url.path,
        "request_id": getattr(request.state, "request_id", None),
        "client_ip": request.client.host if request.client else "unknown",
        "user_agent": request.headers.get("user-agent"),
    }


def read_session_cookie(request: Request, cookie_name: str) -> str | None:
    """Read one cookie, falling back to the raw header.

    Google Identity Services の `g_state` のように JSON を含むクッキーがあると
    `request.cookies` が空になることがあるため、ヘッダーを `;` で分解して探す。
    """

    parsed = request.cookies.get(cookie_name)
    if parsed:
        return parsed

    for chunk in (request.headers.get("cookie") or "").split(";"):
        name, sep, value = chunk.strip().partition("=")
        if sep and name.strip() == cookie_name:
            return value.strip() or None
    return None


def resolve_session_cookie(request: Request) -> tuple[str, str | None]:
    name = settings.session_cookie_name or "ms_session"
    return name, read_session_cookie(request, name)


def resolve_guest_session_cookie(request: Request) -> tuple[str, str | None]:
    name = settings.guest_session_cookie_name or "ms_guest"
    return name, read_session_cookie(request, name)


def get_app_store(request: Request) -> SnapshotStore:
    """アプリ共有の永続ストア。初回アクセス時に Firestore クライアントを生成する。"""

    store = getattr(request.app.state, "store", None)
    if store is None:
        store = create_store()
        request.app.state.store = store
    return store


def get_guest_registry(request: Request) -> GuestStoreRegistry:
    registry = getattr(request.app.state, "guest_stores", None)
    if registry is None:
        registry = create_guest_registry()
        request.app.state.guest_stores = registry
    return registry


@dataclass(frozen=True)
class SessionContext:
    """The caller of a request and the store their data lives in."""

    user_id: str
    kind: SessionKind
    store: SnapshotStore
    guest_id: str | None = None


def _unauthorized(request: Request, reason: str, detail: str, user_id: str | None = None) -> HTTPException:
    logger.warning(
        "session_validation_failed",
        **_session_log_context(request, reason=reason, user_id=user_id),
    )
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _resolve_user_session(request: Request, raw_token: str) -> SessionContext:
    try:
        payload = verify_session_token(raw_token)
    except SignatureExpired as exc:
        raise _unauthorized(request, "expired", "Session expired") from exc
    except BadSignature as exc:
        raise _unauthorized(request, "bad_signature", "Invalid session token") from exc
    except RuntimeError as exc:
        logger.error(
            "session_validation_failed",
            **_session_log_context(request, reason="configuration_error", user_id=None),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Session configuration error",
        ) from exc

    sub = payload.get("sub") if isinstance(payload, dict) else None
    if not sub:
        raise _unauthorized(request, "missing_sub", "Invalid session payload")

    store = get_app_store(request)
    if store.get_user(sub) is None:
        raise _unauthorized(request, "user_not_found", "User not found", user_id=sub)
    return SessionContext(user_id=sub, kind="user", store=store)


def _resolve_guest_session(request: Request, raw_token: str) -> SessionContext:
    try:
        guest_id = verify_guest_session_token(raw_token)
    except SignatureExpired as exc:
        raise _unauthorized(request, "guest_expired", "Guest session expired") from exc
    except BadSignature as exc:
        raise _unauthorized(request, "guest_bad_signature", "Invalid guest session") from exc

    store = get_guest_registry(request).get(guest_id)
    user_id = f"guest:{guest_id}"
    store.ensure_user(user_id, now=datetime.now(UTC), display_name="Guest")
    return SessionContext(user_id=user_id, kind="guest", store=store, guest_id=guest_id)


def get_session_context(request: Request) -> SessionContext:
    """Resolve who is calling and which store backs their data.

    優先順位: ログインセッション > ゲストセッション > DISABLE_SESSION_AUTH 時の匿名ユーザー。
    ストアへの問い合わせを伴うため同期関数とし、FastAPI のスレッドプールで実行させる。
    """

    _, raw_token = resolve_session_cookie(request)
    if raw_token:
        context = _resolve_user_session(request, raw_token)
    else:
        _, guest_token = resolve_guest_session_cookie(request)
        if guest_token:
            context = _resolve_guest_session(request, guest_token)
        elif settings.disable_session_auth:
            store = get_app_store(request)
            user_id = settings.anonymous_user_id
            store.ensure_user(user_id, now=datetime.now(UTC), display_name="Local user")
            context = SessionContext(user_id=user_id, kind="anonymous", store=store)
        else:
            raise _unauthorized(request, "missing_cookie", "Session cookie is missing")

    request.state.user_id = context.user_id
    request.state.session_kind = context.kind
    return context
