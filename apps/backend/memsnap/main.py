from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from . import __version__
from .config import settings
from .logging import configure_logging, logger
from .middleware import AccessLogAndMetricsMiddleware, RequestIDMiddleware
from .providers import shutdown_providers
from .routers import auth as auth_router
from .routers import config as cfg
from .routers import health, snapshots, users
from .srs import resolve_policy


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Ensure LLM clients and the shared executor are released on shutdown."""
    yield
    shutdown_providers()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    永続ストアは最初のリクエストで生成する（`memsnap.auth.get_app_store`）。
    テストでは `app.state.store` を事前に差し込める。
    """
    configure_logging()
    policy = resolve_policy(settings)
    logger.info(
        "scheduler_policy_selected",
        policy=policy.name,
        explicit=settings.srs_policy is not None,
        initial_interval_days=policy.initial_interval_days,
        min_interval_days=policy.min_interval_days,
        max_interval_days=policy.max_interval_days,
    )
    if settings.srs_policy is None:
        logger.warning("scheduler_policy_defaulted", policy=policy.name)

    app = FastAPI(title="MemSnap API", version=__version__, lifespan=_lifespan)
    app.state.store = None
    app.state.guest_stores = None

    configured_origins = list(settings.allowed_cors_origins)
    allow_credentials = bool(configured_origins)
    if not configured_origins:
        configured_origins = ["*"]

    # ワイルドカード許可時は資格情報を無効化し、明示されたオリジンのみクレデンシャル付き CORS を許可する
    app.add_middleware(
        CORSMiddleware,
        allow_origins=configured_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Starlette では後から追加したミドルウェアが外側で実行される。
    # RequestID（外側）で採番し、AccessLog 側で構造化ログとメトリクスを記録する。
    app.add_middleware(AccessLogAndMetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    if settings.disable_session_auth:
        logger.warning(
            "session_auth_disabled",
            reason="config_flag",
            anonymous_user_id=settings.anonymous_user_id,
        )
    app.include_router(auth_router.router)
    app.include_router(snapshots.router, prefix="/api/snapshots")
    app.include_router(users.router, prefix="/api/users")
    app.include_router(cfg.router, prefix="/api")
    app.include_router(health.router)

    return app


app = create_app()
