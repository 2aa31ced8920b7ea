"""Definitions for scrape jobs and their execution lifecycle."""
from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fullscrape.tools.base import ToolResult


class ExecutionStatus(str, enum.Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.PARTIAL_SUCCESS,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMEOUT,
    }
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def count_batches(total_urls: int, batch_size: int) -> int:
    """Number of contiguous batches needed to cover ``total_urls``."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return math.ceil(total_urls / batch_size)


@dataclass
class ScrapeProgress:
    """Counters describing how far a job has got."""

    total_urls: int = 0
    processed_urls: int = 0
    successful_urls: int = 0
    failed_urls: int = 0
    retried_urls: int = 0
    current_batch: int = 0
    total_batches: int = 0

    @classmethod
    def field_names(cls) -> frozenset:
        return frozenset(item.name for item in fields(cls))

    @property
    def percent_complete(self) -> int:
        if not self.total_urls:
            return 0
        return round(self.processed_urls / self.total_urls * 100)

    def as_dict(self) -> Dict[str, int]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


@dataclass
class JobExecutionState:
    """In-memory execution record for one job, owned by the state store."""

    job_id: str
    status: ExecutionStatus = ExecutionStatus.INITIALIZING
    progress: ScrapeProgress = field(default_factory=ScrapeProgress)
    start_time: datetime = field(default_factory=utcnow)
    last_update_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    cancel_requested: bool = False
    pause_requested: bool = False
    error: Optional[str] = None
    results: Optional[List[ToolResult]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def elapsed_ms(self, now: Optional[datetime] = None) -> int:
        """Milliseconds between start and end (or ``now`` while still active)."""
        end = self.end_time or now or utcnow()
        return int((end - self.start_time).total_seconds() * 1000)
