"""Tracing helpers that tag log lines with the job being executed."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

LOGGER = structlog.get_logger("fullscrape.trace")


def set_context(*, job_id: str, **extra: str) -> None:
    bind_contextvars(job_id=job_id, **extra)


def clear_context(*keys: str) -> None:
    unbind_contextvars("job_id", *keys)


@contextlib.contextmanager
def span(*, name: str, url: Optional[str] = None, **fields: object) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        LOGGER.debug("trace_span", span=name, url=url, elapsed_ms=elapsed_ms, **fields)


def log_retry(*, url: str, attempt: int, reason: str) -> None:
    LOGGER.warning("url_retry", url=url, attempt=attempt, reason=reason)

