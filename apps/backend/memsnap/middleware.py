"""Request-scoped middleware: request id propagation and the access log."""

from __future__ import annotations

import asyncio
import re
import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from structlog import contextvars as structlog_contextvars

from .logging import logger
from .metrics import registry

__all__ = ["AccessLogAndMetricsMiddleware", "RequestIDMiddleware"]

REQUEST_ID_HEADER = "X-Request-ID"
# クライアント由来の ID はログに載るため、短い英数字系のみ受け入れる
_ACCEPTABLE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
_MAX_ERROR_MESSAGE = 200


def resolve_request_id(raw: str | None) -> str:
    candidate = (raw or "").strip()
    if candidate and _ACCEPTABLE_REQUEST_ID.match(candidate):
        return candidate
    return uuid4().hex


def _route_template(request: Request) -> str:
    """メトリクスのキーにはルートのテンプレート（/api/snapshots/{snapshot_id}）を使う。"""

    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _truncate(message: str) -> str:
    if len(message) <= _MAX_ERROR_MESSAGE:
        return message
    return f"{message[:_MAX_ERROR_MESSAGE - 3]}..."


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request id to the request state, the log context and the response.

    受け取った `X-Request-ID` が不正な形式なら新しく採番し直す。
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:  # type: ignore[override]
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        with structlog_contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class AccessLogAndMetricsMiddleware(BaseHTTPMiddleware):
    """Write one `request_complete` event per call and feed the metrics registry."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:  # type: ignore[override]
        started = time.perf_counter()
        request_id = getattr(request.state, "request_id", None) or resolve_request_id(None)
        status_code: int | None = None
        is_timeout = False
        error_fields: dict[str, str] = {}
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        except Exception as exc:
            status_code = 500
            is_timeout = isinstance(exc, asyncio.TimeoutError)
            error_fields = {
                "error_type": exc.__class__.__name__,
                "error_message": _truncate(str(exc)),
            }
            raise
        finally:
            latency_ms = (time.perf_counter() - started) * 1000
            is_error = status_code is None or status_code >= 500
            registry.record(
                _route_template(request),
                latency_ms,
                status_code=status_code,
                is_timeout=is_timeout,
            )
            emit = logger.error if is_error else logger.info
            emit(
                "request_complete",
                path=request.url.path,
                method=request.method,
                status_code=status_code,
                latency_ms=round(latency_ms, 2),
                is_error=is_error,
                is_timeout=is_timeout,
                request_id=request_id,
                session_kind=getattr(request.state, "session_kind", None),
                client_ip=request.client.host if request.client else "unknown",
                user_agent=request.headers.get("user-agent", "-"),
                **error_fields,
            )
