import pytest

from fullscrape.orchestrator.jobs import ExecutionStatus, ScrapeProgress
from fullscrape.orchestrator.state_store import JobStateStore
from fullscrape.tools.base import ToolResult


def _running_store(job_id="job", total_urls=45, batch_size=20):
    store = JobStateStore()
    store.create_execution_state(job_id, total_urls, batch_size)
    store.update_status(job_id, ExecutionStatus.RUNNING)
    return store


def test_create_execution_state_computes_batches_and_is_idempotent():
    store = JobStateStore()
    state = store.create_execution_state("job", 45, 20)
    assert state.status is ExecutionStatus.INITIALIZING
    assert state.progress.total_batches == 3
    assert state.end_time is None
    assert store.create_execution_state("job", 10, 1) is state
    assert state.progress.total_urls == 45


@pytest.mark.parametrize("total,size,expected", [(0, 5, 0), (1, 1, 1), (20, 20, 1), (21, 20, 2), (7, 3, 3)])
def test_total_batches_is_ceiling(total, size, expected):
    state = JobStateStore().create_execution_state("job", total, size)
    assert state.progress.total_batches == expected


def test_untracked_jobs_return_none():
    store = JobStateStore()
    assert store.get_state("missing") is None
    assert store.update_status("missing", ExecutionStatus.RUNNING) is None
    assert store.update_progress("missing", processed_urls=1) is None
    assert store.mark_cancelled("missing") is None
    assert store.mark_paused("missing") is None
    assert store.mark_resumed("missing") is None
    assert store.mark_completed("missing", []) is None
    assert store.mark_failed("missing", "boom") is None


def test_update_progress_merges_only_supplied_fields():
    store = _running_store()
    store.update_progress("job", processed_urls=3, successful_urls=2)
    state = store.update_progress("job", failed_urls=1)
    assert state.progress.processed_urls == 3
    assert state.progress.successful_urls == 2
    assert state.progress.failed_urls == 1
    assert state.progress.total_urls == 45


def test_update_progress_rejects_unknown_fields():
    store = _running_store()
    with pytest.raises(ValueError):
        store.update_progress("job", bogus=1)


def test_mutators_stamp_last_update_time():
    store = _running_store()
    before = store.get_state("job").last_update_time
    state = store.update_progress("job", processed_urls=1)
    assert state.last_update_time >= before


def test_pause_and_resume_only_from_valid_states():
    store = JobStateStore()
    store.create_execution_state("job", 5, 5)
    assert store.mark_paused("job").status is ExecutionStatus.INITIALIZING
    store.update_status("job", ExecutionStatus.RUNNING)
    assert store.mark_resumed("job").status is ExecutionStatus.RUNNING
    state = store.mark_paused("job")
    assert state.status is ExecutionStatus.PAUSED
    assert state.pause_requested
    state = store.mark_resumed("job")
    assert state.status is ExecutionStatus.RUNNING
    assert not state.pause_requested


def test_terminal_states_are_final():
    store = _running_store()
    results = [ToolResult(url="https://a.example", success=True)]
    state = store.mark_completed("job", results)
    end_time = state.end_time
    assert state.status is ExecutionStatus.COMPLETED
    assert end_time is not None
    assert state.results == results
    store.mark_failed("job", "late failure")
    store.mark_cancelled("job")
    store.update_status("job", ExecutionStatus.RUNNING)
    assert state.status is ExecutionStatus.COMPLETED
    assert state.end_time == end_time
    assert state.error is None


def test_cancel_from_paused_sets_flags_and_end_time():
    store = _running_store()
    store.mark_paused("job")
    state = store.mark_cancelled("job", [])
    assert state.status is ExecutionStatus.CANCELLED
    assert state.cancel_requested
    assert state.end_time is not None
    assert state.results == []


def test_initializing_cannot_be_reentered():
    store = _running_store()
    state = store.update_status("job", ExecutionStatus.INITIALIZING)
    assert state.status is ExecutionStatus.RUNNING


def test_progress_percent_complete():
    progress = ScrapeProgress(total_urls=8, processed_urls=3)
    assert progress.percent_complete == 38
    assert ScrapeProgress().percent_complete == 0
