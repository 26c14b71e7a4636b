"""サインイン関連のエンドポイント（Google / ゲスト / ログアウト）。"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime
from http import HTTPStatus
from typing import Any

import anyio
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from itsdangerous import BadSignature
from pydantic import BaseModel, Field

from ..auth import (
    get_app_store,
    get_guest_registry,
    issue_guest_session_token,
    issue_session_token,
    resolve_guest_session_cookie,
    resolve_session_cookie,
    verify_guest_session_token,
)
from ..config import settings
from ..logging import logger

router = APIRouter(prefix="/api/auth", tags=["auth"])
_google_transport = google_requests.Request()
_MIN_COOKIE_AGE_SECONDS = 60


class GoogleAuthRequest(BaseModel):
    id_token: str = Field(..., min_length=1, description="ID token from Google Identity Services")


@dataclass(frozen=True)
class _GoogleIdentity:
    sub: str
    email: str
    display_name: str

    @property
    def email_hash(self) -> str | None:
        return _hash_for_log(self.email)


def _hash_for_log(value: str | None) -> str | None:
    """Short SHA-256 prefix so logs can correlate accounts without holding PII."""

    if not value:
        return None
    return hashlib.sha256(value.lower().encode("utf-8")).hexdigest()[:12]


def _write_cookie(response: JSONResponse, name: str, value: str | None, *, max_age: int = 0) -> None:
    """value が None ならクッキーを削除する。属性は発行時と削除時で揃える。"""

    attributes: dict[str, Any] = {
        "httponly": True,
        "secure": settings.session_cookie_secure,
        "samesite": "lax",
    }
    if value is None:
        response.delete_cookie(key=name, **attributes)
        return
    response.set_cookie(
        key=name, value=value, max_age=max(_MIN_COOKIE_AGE_SECONDS, int(max_age)), **attributes
    )


def _drop_guest_store(request: Request, guest_token: str | None) -> bool:
    if not guest_token:
        return False
    try:
        guest_id = verify_guest_session_token(guest_token)
    except BadSignature:
        # 期限切れ・改ざんされたトークンに対応するストアはない
        return False
    get_guest_registry(request).discard(guest_id)
    return True


def _verify_google_identity(raw_token: str) -> _GoogleIdentity:
    """Validate the ID token and the claims MemSnap needs; HTTPException otherwise."""

    if not settings.google_client_id:
        logger.error("google_auth_failed", reason="missing_client_id")
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail="Google authentication is not configured",
        )

    try:
        claims = id_token.verify_oauth2_token(
            raw_token,
            _google_transport,
            settings.google_client_id,
            clock_skew_in_seconds=max(0, int(settings.google_clock_skew_seconds or 0)),
        )
    except ValueError as exc:
        logger.warning("google_auth_failed", reason="invalid_token", error=repr(exc))
        raise HTTPException(status_code=HTTPStatus.UNAUTHORIZED, detail="Invalid ID token") from exc

    sub = claims.get("sub")
    email = claims.get("email")
    missing = [name for name, value in (("sub", sub), ("email", email)) if not value]
    if missing:
        logger.warning(
            "google_auth_failed",
            reason="missing_claims",
            missing_claims=missing,
            user_id=sub,
            email_hash=_hash_for_log(email),
        )
        raise HTTPException(
            status_code=HTTPStatus.UNAUTHORIZED, detail="ID token is missing required claims"
        )
    identity = _GoogleIdentity(sub=sub, email=email, display_name=claims.get("name") or email)

    required_domain = (settings.google_allowed_hd or "").strip()
    hosted_domain = claims.get("hd") or claims.get("hostedDomain")
    if required_domain and hosted_domain != required_domain:
        logger.warning(
            "google_auth_denied",
            reason="domain_mismatch",
            user_id=identity.sub,
            hosted_domain=hosted_domain,
            allowed_domain=required_domain,
            email_hash=identity.email_hash,
        )
        raise HTTPException(
            status_code=HTTPStatus.FORBIDDEN, detail="Google account domain is not allowed"
        )
    return identity


@router.post("/google", summary="Google ID トークンでサインインしセッションクッキーを発行")
async def authenticate_with_google(payload: GoogleAuthRequest, request: Request) -> JSONResponse:
    identity = _verify_google_identity(payload.id_token)
    store = get_app_store(request)
    user = await anyio.to_thread.run_sync(
        lambda: store.record_user_login(
            user_id=identity.sub,
            email=identity.email,
            display_name=identity.display_name,
            login_at=datetime.now(UTC),
        )
    )

    response = JSONResponse(content={"user": user.model_dump(mode="json")})
    session_cookie, _ = resolve_session_cookie(request)
    _write_cookie(
        response,
        session_cookie,
        issue_session_token(identity.sub),
        max_age=settings.session_max_age_seconds,
    )
    # ゲストで作ったデータはログイン後には引き継がない
    guest_cookie, guest_token = resolve_guest_session_cookie(request)
    if guest_token:
        _drop_guest_store(request, guest_token)
        _write_cookie(response, guest_cookie, None)

    request.state.user_id = identity.sub
    logger.info(
        "google_auth_succeeded",
        user_id=identity.sub,
        email_hash=identity.email_hash,
        display_name_hash=_hash_for_log(identity.display_name),
    )
    return response


@router.post("/guest", summary="ゲストセッションを開始（プロセス内メモリのみ）")
async def start_guest_session(request: Request) -> JSONResponse:
    guest_cookie, previous_token = resolve_guest_session_cookie(request)
    _drop_guest_store(request, previous_token)

    guest_id, token = issue_guest_session_token()
    get_guest_registry(request).get(guest_id)
    response = JSONResponse(content={"guest": True})
    _write_cookie(response, guest_cookie, token, max_age=settings.guest_session_max_age_seconds)
    logger.info("guest_session_started", guest_id_hash=_hash_for_log(guest_id))
    return response


@router.post("/logout", summary="セッション/ゲストクッキーを破棄")
async def logout(request: Request) -> JSONResponse:
    session_cookie, _ = resolve_session_cookie(request)
    guest_cookie, guest_token = resolve_guest_session_cookie(request)
    dropped_guest = _drop_guest_store(request, guest_token)

    response = JSONResponse(content={"ok": True})
    _write_cookie(response, session_cookie, None)
    _write_cookie(response, guest_cookie, None)
    logger.info("session_logout", had_guest=dropped_guest)
    return response
