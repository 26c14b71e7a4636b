from __future__ import annotations

from functools import partial

import anyio
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from ..auth import SessionContext, get_session_context
from ..config import settings
from ..dependencies import Clock, get_clock, get_generation_flow, get_scheduler_policy
from ..flows.snapshot_generate import SnapshotGenerationError, SnapshotGenerationFlow
from ..logging import logger
from ..models.snapshot import (
    ActivityResponse,
    ReviewRequest,
    Snapshot,
    SnapshotCreateRequest,
    SnapshotDraft,
    SnapshotListResponse,
)
from ..srs import SchedulerPolicy, initialize
from ..stats import build_activity
from ..store import SnapshotNotFoundError
from ..store.common import normalize_tags

router = APIRouter(tags=["snapshots"])


def _not_found(snapshot_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"message": f"snapshot not found: {snapshot_id}", "reason_code": "SNAPSHOT_NOT_FOUND"},
    )


@router.get("", response_model=SnapshotListResponse, summary="スナップショット一覧（新しい順）")
async def list_snapshots(ctx: SessionContext = Depends(get_session_context)) -> SnapshotListResponse:
    items = await anyio.to_thread.run_sync(ctx.store.list_snapshots, ctx.user_id)
    return SnapshotListResponse(items=items, total=len(items))


@router.get("/due", response_model=SnapshotListResponse, summary="復習期限が来たスナップショット（期限の古い順）")
async def list_due_snapshots(
    ctx: SessionContext = Depends(get_session_context),
    clock: Clock = Depends(get_clock),
) -> SnapshotListResponse:
    items = await anyio.to_thread.run_sync(ctx.store.list_due_snapshots, ctx.user_id, clock())
    return SnapshotListResponse(items=items, total=len(items))


@router.get("/activity", response_model=ActivityResponse, summary="日別の作成/復習件数")
async def get_activity(
    days: int | None = Query(default=None, ge=1, le=90),
    ctx: SessionContext = Depends(get_session_context),
    clock: Clock = Depends(get_clock),
) -> ActivityResponse:
    """Return per-day created/reviewed counts for the activity chart (default 14 days)."""

    window = days or settings.activity_window_days
    items = await anyio.to_thread.run_sync(ctx.store.list_snapshots, ctx.user_id)
    points = build_activity(items, days=window, now=clock())
    return ActivityResponse(days=window, points=points)


@router.post(
    "",
    response_model=Snapshot,
    status_code=status.HTTP_201_CREATED,
    summary="テキストから学習カードを生成して保存",
)
async def create_snapshot(
    req: SnapshotCreateRequest,
    ctx: SessionContext = Depends(get_session_context),
    clock: Clock = Depends(get_clock),
    policy: SchedulerPolicy = Depends(get_scheduler_policy),
    flow: SnapshotGenerationFlow = Depends(get_generation_flow),
) -> Snapshot:
    """Generate study material with the LLM, then persist it with a fresh review state.

    生成に失敗した場合は 502 を返し、ストアには何も書き込まない。
    """

    profile = await anyio.to_thread.run_sync(ctx.store.get_user, ctx.user_id)
    interest = profile.interest if profile is not None else None
    try:
        content = await anyio.to_thread.run_sync(flow.run, req.text, interest)
    except SnapshotGenerationError as exc:
        logger.warning(
            "snapshot_generate_failed",
            user_id=ctx.user_id,
            reason_code=exc.reason_code,
            error=str(exc)[:256],
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": "Failed to generate snapshot content", "reason_code": exc.reason_code},
        ) from exc

    now = clock()
    draft = SnapshotDraft(
        **content.model_dump(),
        original_text=req.text.strip(),
        tags=normalize_tags(req.tags),
        has_audio=req.generate_audio,
    )
    return await anyio.to_thread.run_sync(
        partial(
            ctx.store.create_snapshot,
            ctx.user_id,
            draft,
            review=initialize(now, policy),
            created_at=now,
        )
    )


@router.get("/{snapshot_id}", response_model=Snapshot, summary="スナップショット取得")
async def get_snapshot(
    snapshot_id: str,
    ctx: SessionContext = Depends(get_session_context),
) -> Snapshot:
    snapshot = await anyio.to_thread.run_sync(ctx.store.get_snapshot, ctx.user_id, snapshot_id)
    if snapshot is None:
        raise _not_found(snapshot_id)
    return snapshot


@router.post("/{snapshot_id}/review", response_model=Snapshot, summary="難易度を記録して次回復習日時を更新")
async def review_snapshot(
    snapshot_id: str,
    payload: ReviewRequest,
    ctx: SessionContext = Depends(get_session_context),
    clock: Clock = Depends(get_clock),
    policy: SchedulerPolicy = Depends(get_scheduler_policy),
) -> Snapshot:
    try:
        return await anyio.to_thread.run_sync(
            partial(
                ctx.store.apply_review,
                ctx.user_id,
                snapshot_id,
                payload.difficulty,
                now=clock(),
                policy=policy,
            )
        )
    except SnapshotNotFoundError as exc:
        raise _not_found(snapshot_id) from exc


@router.delete(
    "/{snapshot_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="スナップショット削除",
)
async def delete_snapshot(
    snapshot_id: str,
    ctx: SessionContext = Depends(get_session_context),
) -> Response:
    deleted = await anyio.to_thread.run_sync(ctx.store.delete_snapshot, ctx.user_id, snapshot_id)
    if not deleted:
        raise _not_found(snapshot_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
