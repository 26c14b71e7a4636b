"""ルート単位のリクエストメトリクス（プロセス内、再起動でリセット）。"""

from __future__ import annotations

import threading
from collections import Counter, deque
from dataclasses import dataclass, field

_DEFAULT_WINDOW = 200


@dataclass
class _RouteStats:
    latencies_ms: deque[float]
    total: int = 0
    errors: int = 0
    timeouts: int = 0
    status_classes: Counter[str] = field(default_factory=Counter)


def percentile(values: list[float], ratio: float) -> float:
    """Nearest-rank percentile using the lower index; 0.0 for an empty list."""

    if not values:
        return 0.0
    ordered = sorted(values)
    index = int(max(0.0, min(1.0, ratio)) * (len(ordered) - 1))
    return ordered[index]


class MetricsRegistry:
    """Latency window and outcome counters keyed by route template.

    キーは `/api/snapshots/{snapshot_id}` のようなテンプレートにして、
    スナップショット ID ごとに系列が増えないようにする。
    """

    def __init__(self, window_size: int = _DEFAULT_WINDOW) -> None:
        self._window_size = max(1, int(window_size))
        self._lock = threading.Lock()
        self._routes: dict[str, _RouteStats] = {}

    def record(
        self,
        route: str,
        latency_ms: float,
        *,
        status_code: int | None,
        is_timeout: bool = False,
    ) -> None:
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        with self._lock:
            stats = self._routes.get(route)
            if stats is None:
                stats = _RouteStats(latencies_ms=deque(maxlen=self._window_size))
                self._routes[route] = stats
            stats.latencies_ms.append(latency_ms)
            stats.total += 1
            stats.status_classes[status_class] += 1
            if status_code is None or status_code >= 500:
                stats.errors += 1
            if is_timeout:
                stats.timeouts += 1

    def snapshot(self) -> dict[str, dict[str, object]]:
        with self._lock:
            result: dict[str, dict[str, object]] = {}
            for route, stats in sorted(self._routes.items()):
                window = list(stats.latencies_ms)
                result[route] = {
                    "count": stats.total,
                    "errors": stats.errors,
                    "timeouts": stats.timeouts,
                    "p50_ms": round(percentile(window, 0.50), 2),
                    "p95_ms": round(percentile(window, 0.95), 2),
                    "status": dict(stats.status_classes),
                }
            return result

    def reset(self) -> None:
        with self._lock:
            self._routes.clear()


registry = MetricsRegistry()
