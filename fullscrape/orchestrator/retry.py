"""Per-job bookkeeping of failed URLs and their retry backoff."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

from fullscrape.orchestrator.options import DEFAULT_BASE_RETRY_DELAY_MS, DEFAULT_MAX_RETRY_ATTEMPTS


@dataclass
class RetryRecord:
    """Failure history of one URL within a job."""

    url: str
    attempts: int
    last_error: str
    next_eligible_time: float


@dataclass(frozen=True)
class RetryDecision:
    can_retry: bool
    attempts_made: int
    wait_time_ms: int


@dataclass(frozen=True)
class RetryStats:
    pending_retries: int
    max_retries_exceeded: int


def _error_message(error: Union[str, BaseException, None]) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return error or "Unknown error"


class RetryTracker:
    """Tracks failed URLs for one job and decides when they may be retried.

    Backoff doubles with every failure: ``base_retry_delay_ms * 2 ** (attempts - 1)``.
    The tracker never retries anything itself.
    """

    def __init__(
        self,
        max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS,
        base_retry_delay_ms: int = DEFAULT_BASE_RETRY_DELAY_MS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_retry_attempts = max_retry_attempts
        self.base_retry_delay_ms = base_retry_delay_ms
        self._clock = clock
        self._records: Dict[str, RetryRecord] = {}

    def track_failed_url(self, url: str, error: Union[str, BaseException, None]) -> RetryDecision:
        """Record a failure of ``url`` and schedule its next eligible attempt."""
        record = self._records.get(url)
        attempts = 1 if record is None else record.attempts + 1
        wait_time_ms = self.base_retry_delay_ms * 2 ** (attempts - 1)
        self._records[url] = RetryRecord(
            url=url,
            attempts=attempts,
            last_error=_error_message(error),
            next_eligible_time=self._clock() + wait_time_ms / 1000,
        )
        return RetryDecision(
            can_retry=attempts < self.max_retry_attempts,
            attempts_made=attempts,
            wait_time_ms=wait_time_ms,
        )

    def get_urls_due_for_retry(self) -> List[str]:
        now = self._clock()
        return [
            url
            for url, record in self._records.items()
            if record.attempts < self.max_retry_attempts and record.next_eligible_time <= now
        ]

    def track_successful_retry(self, url: str) -> None:
        self._records.pop(url, None)

    def get_record(self, url: str) -> Optional[RetryRecord]:
        return self._records.get(url)

    def get_retry_stats(self) -> RetryStats:
        exceeded = sum(1 for record in self._records.values() if record.attempts >= self.max_retry_attempts)
        return RetryStats(
            pending_retries=len(self._records) - exceeded,
            max_retries_exceeded=exceeded,
        )

    def clear(self) -> None:
        self._records.clear()
