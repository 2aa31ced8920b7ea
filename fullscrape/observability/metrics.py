"""Lightweight in-process metrics for scrape executions."""
from __future__ import annotations

import contextlib
import time
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterator

import orjson
import structlog

LOGGER = structlog.get_logger(__name__)

DEFAULT_COUNTERS = (
    "urls_processed",
    "urls_succeeded",
    "urls_failed",
    "retries_attempted",
    "retries_succeeded",
    "batch_failures",
    "jobs_started",
    "jobs_completed",
    "jobs_partial",
    "jobs_failed",
    "jobs_cancelled",
    "jobs_timed_out",
    "job_duration_ms",
)


class MetricsRegistry:
    """Holds mutable counters shared by every job in the process."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        for key in DEFAULT_COUNTERS:
            self._counters[key] = 0

    def incr(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def get(self, name: str) -> int:
        return self._counters.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        """Return a shallow copy of all counters for reporting."""
        return dict(self._counters)

    def export(self, *, path: Path, job_id: str) -> Path:
        """Write counters to a JSON file at ``path``."""
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "job_id": job_id,
            "counters": self.snapshot(),
            "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
        return path


@contextlib.contextmanager
def record_duration(registry: MetricsRegistry, metric_name: str) -> Iterator[None]:
    """Measure elapsed time for a block and add it to ``metric_name``."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        registry.incr(metric_name, elapsed_ms)
        LOGGER.info("timer_stop", metric=metric_name, duration_ms=elapsed_ms)
