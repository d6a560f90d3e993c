from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import Lock

import structlog

from .config import settings
from .models import utc_now_naive

logger = structlog.get_logger("venueos.http")

# one process keeps the last N requests in memory; enough for a 15 minute window at venue traffic
_events: deque["RequestEvent"] = deque(maxlen=20000)
_lock = Lock()


@dataclass(frozen=True)
class RequestEvent:
    method: str
    path: str
    status_code: int
    duration_ms: float
    request_id: str
    tenant_slug: str | None = None
    at: datetime = field(default_factory=utc_now_naive)

    @property
    def status_class(self) -> str:
        return f"{self.status_code // 100}xx"

    @property
    def slow(self) -> bool:
        return self.duration_ms >= float(settings.OPS_TIMEOUT_LIKE_MS)


def observe_request(event: RequestEvent, error: Exception | None = None) -> None:
    """Keeps the event for the ops snapshot and writes the access log line."""
    with _lock:
        _events.append(event)
    fields = {
        "request_id": event.request_id,
        "method": event.method,
        "path": event.path,
        "status_code": event.status_code,
        "duration_ms": event.duration_ms,
        "tenant_slug": event.tenant_slug,
    }
    if error is not None:
        logger.error("http_request", error=str(error), **fields)
    else:
        logger.info("http_request", **fields)


def _nearest_rank(ordered: list[float], fraction: float) -> float:
    if not ordered:
        return 0.0
    return ordered[min(len(ordered) - 1, int(round((len(ordered) - 1) * fraction)))]


def get_ops_metrics_snapshot(window_minutes: int = 15) -> dict:
    since = utc_now_naive() - timedelta(minutes=max(1, int(window_minutes)))
    with _lock:
        window = [e for e in _events if e.at >= since]

    classes = Counter({"2xx": 0, "3xx": 0, "4xx": 0, "5xx": 0})
    classes.update(e.status_class for e in window if e.status_class in classes)
    paths = Counter(e.path for e in window)
    latencies = sorted(e.duration_ms for e in window)
    failures = classes["5xx"]

    return {
        "window_minutes": int(window_minutes),
        "checked_at": utc_now_naive(),
        "requests_total": len(window),
        "error_5xx_count": failures,
        "error_rate": round(failures / len(window), 4) if window else 0.0,
        "timeout_like_count": sum(1 for e in window if e.slow),
        "latency_ms_p50": round(_nearest_rank(latencies, 0.50), 2),
        "latency_ms_p95": round(_nearest_rank(latencies, 0.95), 2),
        "by_status_class": dict(classes),
        "top_paths": [
            {"path": path, "count": count}
            for path, count in sorted(paths.items(), key=lambda item: (-item[1], item[0]))[:10]
        ],
    }
