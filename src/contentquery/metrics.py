"""
Performance metrics collector for the content analysis API.

Tracks: request latency, throughput, error count, per-model attempt outcomes
and process memory. Appends request outcomes to metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from collections import defaultdict
from pathlib import Path

import psutil

from .config import METRICS_DIR


class MetricsCollector:
    """Thread-safe request and model-attempt metrics with JSONL file logging."""

    def __init__(self, log_dir: str | Path = METRICS_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        # Request counters.
        self._total_requests: int = 0
        self._total_latency_ms: float = 0.0
        self._error_count: int = 0
        self._min_latency_ms: float = float("inf")
        self._max_latency_ms: float = 0.0

        # Model attempts keyed by model id.
        self._model_success: dict[str, int] = defaultdict(int)
        self._model_failure: dict[str, int] = defaultdict(int)
        self._fallbacks: int = 0

        self._log_dir = Path(log_dir)
        self._log_path = self._log_dir / "metrics.jsonl"

        self._process = psutil.Process(os.getpid())

    def record_request(self, route: str, latency_ms: float, status_code: int) -> None:
        """Records a single request's outcome and appends to the JSONL log."""
        success = int(status_code) < 500
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "route": str(route),
            "status": int(status_code),
            "latency_ms": round(latency_ms, 2),
            "success": success,
        }

        with self._lock:
            self._total_requests += 1
            self._total_latency_ms += latency_ms
            if latency_ms < self._min_latency_ms:
                self._min_latency_ms = latency_ms
            if latency_ms > self._max_latency_ms:
                self._max_latency_ms = latency_ms
            if not success:
                self._error_count += 1

        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError:
            pass

    def record_model_attempt(self, model: str, success: bool) -> None:
        with self._lock:
            if success:
                self._model_success[str(model)] += 1
            else:
                self._model_failure[str(model)] += 1

    def record_fallback(self) -> None:
        """Counts calls answered by a model other than the first candidate."""
        with self._lock:
            self._fallbacks += 1

    def get_summary(self) -> dict:
        """Returns a metrics snapshot."""
        with self._lock:
            total = self._total_requests
            avg_lat = (self._total_latency_ms / total) if total > 0 else 0.0
            min_lat = self._min_latency_ms if total > 0 else 0.0
            max_lat = self._max_latency_ms if total > 0 else 0.0
            errors = self._error_count
            models = {
                model: {
                    "success": self._model_success.get(model, 0),
                    "failure": self._model_failure.get(model, 0),
                }
                for model in sorted(set(self._model_success) | set(self._model_failure))
            }
            fallbacks = self._fallbacks

        uptime_s = time.time() - self._start_time
        throughput_rps = (total / uptime_s) if uptime_s > 0 else 0.0

        mem_info = self._process.memory_info()

        return {
            "latency": {
                "avg_ms": round(avg_lat, 2),
                "min_ms": round(min_lat, 2),
                "max_ms": round(max_lat, 2),
            },
            "throughput": {
                "total_requests": total,
                "requests_per_second": round(throughput_rps, 4),
                "uptime_seconds": round(uptime_s, 1),
            },
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
            "models": {
                "attempts": models,
                "fallbacks": fallbacks,
            },
            "errors": {
                "count": errors,
                "rate_percent": round((errors / total * 100) if total > 0 else 0.0, 2),
            },
        }


# Module-level singleton used by the API server.
metrics_collector = MetricsCollector()
