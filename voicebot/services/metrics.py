from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Deque, Dict, List, Optional

from dotenv import load_dotenv

logger = logging.getLogger("voicebot")

load_dotenv()
METRICS_DASHBOARD = os.getenv("METRICS_DASHBOARD", "0") == "1"
DASHBOARD_REFRESH_S = 0.25


@dataclass
class RequestMetrics:
    request_id: int
    mode: str  # parallel | traditional | chat
    started_at: float  # perf_counter timestamp
    transcribe_ms: Optional[float] = None
    first_record_ms: Optional[float] = None
    first_audio_ms: Optional[float] = None
    total_ms: Optional[float] = None
    audio_records: int = 0
    fallback: bool = False
    error: Optional[str] = None


class MetricsStore:
    def __init__(self, max_requests: int = 25):
        self.max_requests = max_requests
        self._lock = threading.Lock()
        self._requests: Deque[RequestMetrics] = deque(maxlen=max_requests)
        self._inflight: Dict[int, RequestMetrics] = {}
        self._next_id = 0

    def start(self, mode: str) -> RequestMetrics:
        with self._lock:
            self._next_id += 1
            rm = RequestMetrics(request_id=self._next_id, mode=mode, started_at=time.perf_counter())
            self._inflight[rm.request_id] = rm
            return rm

    def elapsed_ms(self, rm: RequestMetrics) -> float:
        return (time.perf_counter() - rm.started_at) * 1000.0

    def finish(self, rm: RequestMetrics, error: Optional[str] = None) -> RequestMetrics:
        with self._lock:
            self._inflight.pop(rm.request_id, None)
            if rm.total_ms is None:
                rm.total_ms = self.elapsed_ms(rm)
            if error:
                rm.error = error
            self._requests.append(rm)
        logger.info(
            f"Request #{rm.request_id} mode={rm.mode} total={rm.total_ms:.0f} ms "
            f"audio={rm.audio_records} fallback={rm.fallback} error={rm.error or '-'}"
        )
        return rm

    def snapshot(self) -> List[RequestMetrics]:
        with self._lock:
            requests = list(self._requests)
            inflight = list(self._inflight.values())
        # In-flight requests first, then finished ones oldest to newest.
        return inflight + requests

    def summary(self) -> Dict[str, object]:
        finished = [r for r in self.snapshot() if r.total_ms is not None]
        totals = [r.total_ms for r in finished]
        return {
            "recentRequests": len(finished),
            "fallbacks": sum(1 for r in finished if r.fallback),
            "errors": sum(1 for r in finished if r.error),
            "avgTotalMs": round(sum(totals) / len(totals), 1) if totals else None,
            "last": asdict(finished[-1]) if finished else None,
        }


_STORE: Optional[MetricsStore] = None


def get_store() -> MetricsStore:
    global _STORE
    if _STORE is None:
        _STORE = MetricsStore(max_requests=int(os.getenv("METRICS_MAX_REQUESTS", "25")))
    return _STORE


def _render_rich_table(requests: List[RequestMetrics]):
    from rich.table import Table

    t = Table(title="Voice Bot Requests (live)")
    t.add_column("req", justify="right")
    t.add_column("mode")
    t.add_column("stt", justify="right")
    t.add_column("first_record", justify="right")
    t.add_column("first_audio", justify="right")
    t.add_column("total", justify="right")
    t.add_column("audio", justify="right")
    t.add_column("fallback")
    t.add_column("error", overflow="fold")

    def fmt(v: Optional[float]) -> str:
        return "-" if v is None else f"{v:.0f}ms"

    for rm in requests[:25]:
        t.add_row(
            str(rm.request_id),
            rm.mode,
            fmt(rm.transcribe_ms),
            fmt(rm.first_record_ms),
            fmt(rm.first_audio_ms),
            fmt(rm.total_ms),
            str(rm.audio_records),
            "yes" if rm.fallback else "",
            rm.error or "",
        )
    return t



_dashboard: Optional[threading.Thread] = None


def _watch(store: MetricsStore) -> None:
    from rich.console import Console
    from rich.live import Live

    with Live(_render_rich_table(store.snapshot()), console=Console(), refresh_per_second=4) as live:
        while True:
            time.sleep(DASHBOARD_REFRESH_S)
            live.update(_render_rich_table(store.snapshot()))


def start_dashboard(enabled: bool = METRICS_DASHBOARD) -> Optional[threading.Thread]:
    """Live request table in the terminal for local runs (METRICS_DASHBOARD=1). Started at most once."""
    global _dashboard
    if not enabled:
        return None
    if _dashboard is None:
        _dashboard = threading.Thread(target=_watch, args=(get_store(),), daemon=True, name="voicebot-metrics")
        _dashboard.start()
    return _dashboard
