from __future__ import annotations

from datetime import UTC, datetime

import anyio
from fastapi import APIRouter, Depends

from ..auth import SessionContext, get_session_context
from ..logging import logger
from ..models.user import InterestUpdateRequest, MeResponse, UserProfile

router = APIRouter(tags=["users"])


@router.get("/me", response_model=MeResponse, summary="現在のユーザーと学習統計")
async def get_me(ctx: SessionContext = Depends(get_session_context)) -> MeResponse:
    profile = await anyio.to_thread.run_sync(ctx.store.get_user, ctx.user_id)
    if profile is None:
        profile = UserProfile(id=ctx.user_id, created_at=datetime.now(UTC))
    return MeResponse(user=profile, session_kind=ctx.kind)


@router.put("/me/interest", response_model=UserProfile, summary="パーソナライズ用の興味タグを更新")
async def update_interest(
    payload: InterestUpdateRequest,
    ctx: SessionContext = Depends(get_session_context),
) -> UserProfile:
    """Set (or clear with null/blank) the interest used to personalise analogies and mnemonics."""

    profile = await anyio.to_thread.run_sync(
        ctx.store.update_user_interest, ctx.user_id, payload.interest
    )
    logger.info("user_interest_updated", user_id=ctx.user_id, has_interest=profile.interest is not None)
    return profile
