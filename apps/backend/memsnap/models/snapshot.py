from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from ..srs import Difficulty, ReviewState


class GeneratedContent(BaseModel):
    """LLM が生成する学習素材（スナップショット本文）。"""

    model_config = ConfigDict(extra="ignore")

    question: str
    answer: str
    summary: str
    analogy: str
    mnemonic: str


class SnapshotDraft(GeneratedContent):
    """保存前のスナップショット。生成結果に元テキストとタグを添えたもの。"""

    original_text: str
    tags: list[str] = Field(default_factory=list)
    has_audio: bool = False


class Snapshot(SnapshotDraft):
    """A persisted learning item together with its review schedule."""

    id: str
    user_id: str
    created_at: datetime
    review: ReviewState


class SnapshotCreateRequest(BaseModel):
    """Request model for generating and saving a new snapshot.

    学習したいテキストと任意のタグを受け取り、LLM で問題/回答などを生成して保存する。
    """

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "text": "Mitochondria produce ATP through oxidative phosphorylation.",
                    "tags": ["biology"],
                    "generate_audio": False,
                }
            ]
        }
    )

    text: str = Field(min_length=1, max_length=5000, description="学習対象のテキスト（1..5000文字）")
    tags: list[str] = Field(default_factory=list, max_length=20)
    generate_audio: bool = False


class ReviewRequest(BaseModel):
    """Self-reported difficulty after attempting recall."""

    difficulty: Difficulty


class SnapshotListResponse(BaseModel):
    items: list[Snapshot]
    total: int


class ActivityPoint(BaseModel):
    """1日分の作成/復習件数（活動グラフ用）。"""

    date: str
    created: int
    reviewed: int


class ActivityResponse(BaseModel):
    days: int
    points: list[ActivityPoint]
