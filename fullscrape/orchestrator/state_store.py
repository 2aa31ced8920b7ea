"""Authoritative in-memory store of job execution states."""
from __future__ import annotations

import threading
from typing import Dict, Optional, Sequence

import structlog

from fullscrape.orchestrator.jobs import (
    ExecutionStatus,
    JobExecutionState,
    ScrapeProgress,
    count_batches,
    utcnow,
)
from fullscrape.tools.base import ToolResult

LOGGER = structlog.get_logger(__name__)


class JobStateStore:
    """Holds one ``JobExecutionState`` per job id for the life of the process.

    Every mutator stamps ``last_update_time`` and returns the updated state, or
    None when the job is not tracked. Terminal states are final: later status
    changes are ignored.
    """

    def __init__(self) -> None:
        self._states: Dict[str, JobExecutionState] = {}
        self._lock = threading.RLock()

    def create_execution_state(self, job_id: str, total_urls: int, batch_size: int) -> JobExecutionState:
        """Create the state for ``job_id``; an existing state is returned as is."""
        with self._lock:
            existing = self._states.get(job_id)
            if existing is not None:
                return existing
            state = JobExecutionState(
                job_id=job_id,
                progress=ScrapeProgress(
                    total_urls=total_urls,
                    total_batches=count_batches(total_urls, batch_size),
                ),
            )
            self._states[job_id] = state
            return state

    def get_state(self, job_id: str) -> Optional[JobExecutionState]:
        with self._lock:
            return self._states.get(job_id)

    def update_status(
        self,
        job_id: str,
        status: ExecutionStatus,
        error: Optional[str] = None,
    ) -> Optional[JobExecutionState]:
        with self._lock:
            state = self._states.get(job_id)
            if state is None:
                return None
            if state.is_terminal or status is ExecutionStatus.INITIALIZING:
                LOGGER.debug("status_change_ignored", job_id=job_id, current=state.status.value, requested=status.value)
                return state
            now = utcnow()
            state.status = status
            state.last_update_time = now
            if status.is_terminal:
                state.end_time = now
            if error:
                state.error = error
            return state

    def update_progress(self, job_id: str, **changes: int) -> Optional[JobExecutionState]:
        """Merge the supplied counters into the job's progress."""
        unknown = set(changes) - ScrapeProgress.field_names()
        if unknown:
            raise ValueError(f"Unknown progress fields: {sorted(unknown)}")
        with self._lock:
            state = self._states.get(job_id)
            if state is None:
                return None
            for name, value in changes.items():
                setattr(state.progress, name, value)
            state.last_update_time = utcnow()
            return state

    def mark_cancelled(
        self,
        job_id: str,
        results: Optional[Sequence[ToolResult]] = None,
    ) -> Optional[JobExecutionState]:
        with self._lock:
            state = self._states.get(job_id)
            if state is None:
                return None
            state.cancel_requested = True
            return self._terminate(state, ExecutionStatus.CANCELLED, None, results)

    def mark_paused(self, job_id: str) -> Optional[JobExecutionState]:
        with self._lock:
            state = self._states.get(job_id)
            if state is None:
                return None
            if state.status is ExecutionStatus.RUNNING:
                state.pause_requested = True
                state.status = ExecutionStatus.PAUSED
            state.last_update_time = utcnow()
            return state

    def mark_resumed(self, job_id: str) -> Optional[JobExecutionState]:
        with self._lock:
            state = self._states.get(job_id)
            if state is None:
                return None
            if state.status is ExecutionStatus.PAUSED:
                state.pause_requested = False
                state.status = ExecutionStatus.RUNNING
            state.last_update_time = utcnow()
            return state

    def mark_completed(self, job_id: str, results: Sequence[ToolResult]) -> Optional[JobExecutionState]:
        with self._lock:
            state = self._states.get(job_id)
            if state is None:
                return None
            return self._terminate(state, ExecutionStatus.COMPLETED, None, results)

    def mark_partial_success(
        self,
        job_id: str,
        error: str,
        results: Sequence[ToolResult],
    ) -> Optional[JobExecutionState]:
        with self._lock:
            state = self._states.get(job_id)
            if state is None:
                return None
            return self._terminate(state, ExecutionStatus.PARTIAL_SUCCESS, error, results)

    def mark_failed(
        self,
        job_id: str,
        error: str,
        results: Optional[Sequence[ToolResult]] = None,
    ) -> Optional[JobExecutionState]:
        with self._lock:
            state = self._states.get(job_id)
            if state is None:
                return None
            return self._terminate(state, ExecutionStatus.FAILED, error, results)

    def mark_timed_out(
        self,
        job_id: str,
        error: str,
        results: Optional[Sequence[ToolResult]] = None,
    ) -> Optional[JobExecutionState]:
        with self._lock:
            state = self._states.get(job_id)
            if state is None:
                return None
            return self._terminate(state, ExecutionStatus.TIMEOUT, error, results)

    def _terminate(
        self,
        state: JobExecutionState,
        status: ExecutionStatus,
        error: Optional[str],
        results: Optional[Sequence[ToolResult]],
    ) -> JobExecutionState:
        now = utcnow()
        state.last_update_time = now
        if state.is_terminal:
            return state
        state.status = status
        state.end_time = now
        if error:
            state.error = error
        if results is not None:
            state.results = list(results)
        return state
