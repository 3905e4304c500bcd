# -*- coding: utf-8 -*-
"""
OverpassMonitor: per-server health counters for the Overpass endpoint pool
- record_start / record_success / record_failure around every upstream call
- Incremental-mean latency (no sample history kept)
- best_server: untested servers first, then success rate / latency / recent errors
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, Optional

from app.core.logging import get_logger

logger = get_logger()

RECENT_ERROR_WINDOW_S = 5 * 60
RECENT_ERROR_PENALTY = 200.0
NO_LATENCY_DEFAULT_MS = 1000.0


@dataclass
class ServerMetrics:
    total: int = 0
    success: int = 0
    failed: int = 0
    rate_limited: int = 0
    timeouts: int = 0
    avg_response_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_at: Optional[float] = None

    @property
    def success_rate(self) -> float:
        return self.success / self.total if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success_rate"] = round(self.success_rate, 4)
        data["avg_response_ms"] = round(self.avg_response_ms, 1)
        return data


class OverpassMonitor:
    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self._wall_clock = wall_clock
        # Counters are touched from every in-flight search; the lock keeps them
        # consistent when the monitor is shared with threadpool-run code too.
        self._lock = threading.Lock()
        self._servers: Dict[str, ServerMetrics] = {}
        self._global = ServerMetrics()

    def _metrics_for(self, server_url: str) -> ServerMetrics:
        metrics = self._servers.get(server_url)
        if metrics is None:
            metrics = ServerMetrics()
            self._servers[server_url] = metrics
        return metrics

    def record_start(self, server_url: str) -> float:
        with self._lock:
            self._metrics_for(server_url).total += 1
            self._global.total += 1
        return self._clock()

    def record_success(self, server_url: str, started_at: float, result_count: int = 0) -> None:
        duration_ms = max(0.0, (self._clock() - started_at) * 1000.0)
        with self._lock:
            for metrics in (self._metrics_for(server_url), self._global):
                metrics.success += 1
                n = metrics.success
                metrics.avg_response_ms = (metrics.avg_response_ms * (n - 1) + duration_ms) / n
        logger.debug(
            "overpass_request_succeeded",
            server=server_url,
            duration_ms=round(duration_ms, 1),
            result_count=result_count,
        )

    def record_failure(
        self,
        server_url: str,
        error: Any,
        started_at: float,
        *,
        is_rate_limit: bool = False,
        is_timeout: bool = False,
    ) -> None:
        duration_ms = max(0.0, (self._clock() - started_at) * 1000.0)
        message = str(error)[:200]
        now = self._wall_clock()
        with self._lock:
            for metrics in (self._metrics_for(server_url), self._global):
                metrics.failed += 1
                if is_rate_limit:
                    metrics.rate_limited += 1
                if is_timeout:
                    metrics.timeouts += 1
                metrics.last_error = message
                metrics.last_error_at = now
        logger.warning(
            "overpass_request_failed",
            server=server_url,
            duration_ms=round(duration_ms, 1),
            rate_limited=is_rate_limit,
            timeout=is_timeout,
            error=message,
        )

    def _score(self, metrics: ServerMetrics) -> float:
        latency = metrics.avg_response_ms or NO_LATENCY_DEFAULT_MS
        score = metrics.success_rate * 1000.0 - latency / 10.0
        if metrics.last_error_at is not None and self._wall_clock() - metrics.last_error_at < RECENT_ERROR_WINDOW_S:
            score -= RECENT_ERROR_PENALTY
        return score

    def best_server(self, candidates: Iterable[str]) -> str:
        """
        Untested candidates win outright (first one in order). Otherwise the highest
        score wins; ties keep the earliest candidate.
        """
        candidates = list(candidates)
        if not candidates:
            raise ValueError("best_server needs at least one candidate")

        with self._lock:
            best_url: Optional[str] = None
            best_score = float("-inf")
            for url in candidates:
                metrics = self._servers.get(url)
                if metrics is None or metrics.total == 0:
                    return url
                score = self._score(metrics)
                if score > best_score:
                    best_url, best_score = url, score
        return best_url

    def get_server_metrics(self, server_url: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            metrics = self._servers.get(server_url)
            return metrics.to_dict() if metrics else None

    def get_all_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "global": self._global.to_dict(),
                "servers": {url: m.to_dict() for url, m in self._servers.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._servers.clear()
            self._global = ServerMetrics()
        logger.info("overpass_metrics_reset")

    def log_report(self) -> None:
        snapshot = self.get_all_metrics()
        g = snapshot["global"]
        logger.info(
            "overpass_server_report",
            total=g["total"],
            success=g["success"],
            failed=g["failed"],
            rate_limited=g["rate_limited"],
            timeouts=g["timeouts"],
            success_rate=g["success_rate"],
            avg_response_ms=g["avg_response_ms"],
        )
        for url, m in snapshot["servers"].items():
            logger.info(
                "overpass_server_stats",
                server=url,
                total=m["total"],
                success_rate=m["success_rate"],
                avg_response_ms=m["avg_response_ms"],
                last_error=m["last_error"],
            )
