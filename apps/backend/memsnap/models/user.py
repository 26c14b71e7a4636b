from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class UserStats(BaseModel):
    """学習統計（作成数・連続学習日数・最終活動日時）。"""

    total_snapshots: int = 0
    streak_days: int = 0
    last_active_date: datetime | None = None


class UserProfile(BaseModel):
    id: str
    email: str = ""
    display_name: str = ""
    created_at: datetime
    interest: str | None = None
    stats: UserStats = Field(default_factory=UserStats)


class InterestUpdateRequest(BaseModel):
    """Personalisation tag used when generating analogies and mnemonics."""

    interest: str | None = Field(default=None, max_length=64)


class MeResponse(BaseModel):
    """現在のセッション主体（ログイン/ゲスト/匿名）とプロフィール。"""

    user: UserProfile
    session_kind: str
