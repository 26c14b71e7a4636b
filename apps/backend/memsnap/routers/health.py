from fastapi import APIRouter

from .. import __version__
from ..metrics import registry

router = APIRouter(tags=["ops"])


@router.get("/healthz")
def health_check() -> dict[str, str]:
    """ライブネス確認。ストアや LLM には触れない。"""
    return {"status": "ok", "version": __version__}


@router.get("/metrics")
def metrics() -> dict[str, object]:
    """Per-route request counters and latency percentiles since process start."""
    return {"paths": registry.snapshot()}
