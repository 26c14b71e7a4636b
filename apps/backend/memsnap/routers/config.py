from fastapi import APIRouter, Depends

from ..config import settings
from ..dependencies import get_scheduler_policy
from ..srs import SchedulerPolicy

router = APIRouter()


@router.get("/config")
def get_runtime_config(policy: SchedulerPolicy = Depends(get_scheduler_policy)) -> dict[str, object]:
    """Expose runtime config needed by the frontend.

    フロントのリクエスト・タイムアウト(ms)をサーバの env に揃えるための
    `request_timeout_ms` と、有効なスケジューラ設定（間隔はすべて日単位）を返す。
    """
    return {
        "request_timeout_ms": settings.llm_timeout_ms,
        "llm_model": settings.llm_model,
        "scheduler": {
            "policy": policy.name,
            "initial_interval_days": policy.initial_interval_days,
            "first_review_intervals": list(policy.first_review_intervals),
            "second_review_intervals": list(policy.second_review_intervals),
            "min_interval_days": policy.min_interval_days,
            "max_interval_days": policy.max_interval_days,
            "min_ease": policy.min_ease,
            "max_ease": policy.max_ease,
        },
    }
