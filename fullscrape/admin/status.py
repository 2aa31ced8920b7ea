"""Administrative status helpers."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fullscrape.orchestrator.jobs import JobExecutionState
from fullscrape.storage.repository import Build


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def build_status_report(state: JobExecutionState) -> Dict[str, Any]:
    """Summarise a tracked job for operators."""
    progress = state.progress
    return {
        "job_id": state.job_id,
        "status": state.status.value,
        "progress": {**progress.as_dict(), "percent_complete": progress.percent_complete},
        "start_time": _iso(state.start_time),
        "end_time": _iso(state.end_time),
        "elapsed_time_ms": state.elapsed_ms(),
        "error": state.error,
    }


def persisted_status_report(build: Build) -> Dict[str, Any]:
    """Summarise a build that is not tracked by the running engine."""
    results = build.results or []
    successful = sum(1 for item in results if item.get("success"))
    total = len(build.target_urls)
    return {
        "job_id": build.build_id,
        "status": build.status.value,
        "progress": {
            "total_urls": total,
            "processed_urls": len(results),
            "successful_urls": successful,
            "failed_urls": len(results) - successful,
            "percent_complete": round(len(results) / total * 100) if total else 0,
        },
        "start_time": None,
        "end_time": None,
        "elapsed_time_ms": None,
        "error": build.error,
        "updated_at": _iso(build.updated_at),
    }
