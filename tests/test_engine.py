import asyncio

from structlog.testing import capture_logs

from fullscrape.orchestrator.engine import CANCELLED_MESSAGE, TIMEOUT_MESSAGE
from fullscrape.orchestrator.jobs import ExecutionStatus
from fullscrape.orchestrator.rate_limiter import RateLimiter
from fullscrape.storage.repository import BuildStatus, InMemoryBuildRepository
from fullscrape.tools.antiblock import HeaderRotationStrategy
from fullscrape.tools.proxy import RotatingProxyProvider
from tests.fakes import (
    RecordingTrackerFactory,
    ScriptedExtractor,
    make_engine,
    make_package,
    make_urls,
    seed_build,
)


class FailingLimiter(RateLimiter):
    def __init__(self, fail_on_call):
        super().__init__(0)
        self.fail_on_call = fail_on_call
        self.calls = 0

    async def execute(self, fn):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise RuntimeError("limiter backend unavailable")
        return await super().execute(fn)


class BrokenStatusRepository(InMemoryBuildRepository):
    async def update_status(self, build_id, status, error=None, *, clear_error=False):
        raise ConnectionError("database is down")


class SlowStatusRepository(InMemoryBuildRepository):
    async def update_status(self, build_id, status, error=None, *, clear_error=False):
        await asyncio.sleep(0.01)
        return await super().update_status(build_id, status, error, clear_error=clear_error)


def test_forty_five_urls_run_in_three_batches():
    urls = make_urls(45)
    extractor = ScriptedExtractor()
    repository = InMemoryBuildRepository()
    engine = make_engine(extractor, repository=repository)
    package = make_package()

    async def _run():
        await seed_build(repository, "job-1", urls, package)
        state = await engine.start("job-1", package, urls, engine.settings.job_options(batch_size=20))
        assert state.status is ExecutionStatus.RUNNING
        assert state.progress.total_batches == 3
        final = await engine.wait("job-1")
        build = await repository.find_build("job-1")
        return final, build

    final, build = asyncio.run(_run())
    assert final.status is ExecutionStatus.COMPLETED
    assert final.end_time is not None
    assert final.progress.processed_urls == 45
    assert final.progress.failed_urls == 0
    assert final.progress.current_batch == 3
    assert extractor.calls == urls
    assert [result.url for result in final.results] == urls
    assert all(result.success for result in final.results)
    assert extractor.cleaned_up
    assert build.status is BuildStatus.COMPLETED
    assert len(build.results) == 45
    assert engine.metrics.get("jobs_completed") == 1
    assert engine.metrics.get("urls_processed") == 45


def test_failed_urls_succeed_in_retry_pass():
    urls = make_urls(10)
    flaky = {urls[1]: ["fail", "ok"], urls[4]: ["raise", "ok"], urls[8]: ["fail", "ok"]}
    extractor = ScriptedExtractor(outcomes=flaky)
    trackers = RecordingTrackerFactory()
    engine = make_engine(extractor, tracker_factory=trackers)

    async def _run():
        await engine.start("job-retry", make_package(), urls, engine.settings.job_options(batch_size=4))
        return await engine.wait("job-retry")

    final = asyncio.run(_run())
    assert final.status is ExecutionStatus.COMPLETED
    assert final.progress.retried_urls == 3
    assert final.progress.successful_urls == 10
    assert final.progress.failed_urls == 0
    assert final.progress.processed_urls == 10
    assert [result.url for result in final.results] == urls
    assert all(result.success for result in final.results)
    tracker = trackers.trackers[0]
    assert all(tracker.get_record(url) is None for url in flaky)
    assert engine.metrics.get("retries_succeeded") == 3


def test_partial_success_reports_exhausted_retries():
    urls = make_urls(4)
    extractor = ScriptedExtractor(outcomes={urls[2]: ["fail", "fail"]})
    repository = InMemoryBuildRepository()
    engine = make_engine(extractor, repository=repository, max_retry_attempts=2)

    async def _run():
        await seed_build(repository, "job-partial", urls)
        await engine.start("job-partial", make_package(), urls)
        final = await engine.wait("job-partial")
        return final, await repository.find_build("job-partial")

    final, build = asyncio.run(_run())
    assert final.status is ExecutionStatus.PARTIAL_SUCCESS
    assert final.error == "1 of 4 URLs failed to scrape successfully (1 exceeded max retries)"
    assert len(final.results) == 4
    assert [result.success for result in final.results] == [True, True, False, True]
    assert build.status is BuildStatus.PARTIAL_SUCCESS
    assert build.error == final.error
    assert build.error_details["category"] == "scraping"
    assert len(build.results) == 4


def test_every_url_failing_marks_job_failed():
    urls = make_urls(3)
    extractor = ScriptedExtractor(outcomes={url: ["fail", "fail"] for url in urls})
    engine = make_engine(extractor)

    async def _run():
        await engine.start("job-dead", make_package(), urls)
        return await engine.wait("job-dead")

    final = asyncio.run(_run())
    assert final.status is ExecutionStatus.FAILED
    assert final.error == "All 3 URLs failed to scrape successfully"
    assert final.progress.retried_urls == 3
    assert len(final.results) == 3


def test_timeout_marks_job_and_persists_error():
    urls = make_urls(20)
    extractor = ScriptedExtractor(delay=0.05)
    repository = InMemoryBuildRepository()
    engine = make_engine(extractor, repository=repository)

    async def _run():
        await seed_build(repository, "job-slow", urls)
        await engine.start("job-slow", make_package(), urls, engine.settings.job_options(timeout_ms=30))
        final = await engine.wait("job-slow")
        engine.cleanup("job-slow")
        engine.cleanup("job-slow")
        return final, await repository.find_build("job-slow")

    final, build = asyncio.run(_run())
    assert final.status is ExecutionStatus.TIMEOUT
    assert final.end_time is not None
    assert final.error == TIMEOUT_MESSAGE
    assert final.results is not None
    assert final.progress.processed_urls < 20
    assert build.status is BuildStatus.FAILED
    assert build.error == TIMEOUT_MESSAGE
    assert build.error_details["context"]["operation"] == "fullScrape.timeout"
    assert engine.metrics.get("jobs_timed_out") == 1
    assert extractor.cleaned_up


def test_unknown_tool_fails_without_touching_limiter_or_tracker():
    urls = make_urls(5)
    trackers = RecordingTrackerFactory()
    repository = InMemoryBuildRepository()
    engine = make_engine(ScriptedExtractor(), repository=repository, tracker_factory=trackers)

    async def _run():
        await seed_build(repository, "job-bad-tool", urls)
        await engine.start("job-bad-tool", make_package(tool_id="missing_tool"), urls)
        final = await engine.wait("job-bad-tool")
        return final, await repository.find_build("job-bad-tool")

    final, build = asyncio.run(_run())
    assert final.status is ExecutionStatus.FAILED
    assert final.error == "Scraper tool with ID 'missing_tool' not found in registry"
    assert final.results is None
    assert final.progress.processed_urls == 0
    assert engine.rate_limiter.total_requests == 0
    assert trackers.trackers == []
    assert build.status is BuildStatus.FAILED
    assert build.error_details["category"] == "configuration"


def test_initialization_error_still_cleans_up_tool():
    extractor = ScriptedExtractor(fail_initialize=ValueError("selectors missing"))
    engine = make_engine(extractor)

    async def _run():
        await engine.start("job-init", make_package(), make_urls(2))
        return await engine.wait("job-init")

    final = asyncio.run(_run())
    assert final.status is ExecutionStatus.FAILED
    assert final.error == "selectors missing"
    assert extractor.calls == []
    assert extractor.cleaned_up


def test_cancel_untracked_job_returns_false():
    engine = make_engine(ScriptedExtractor())
    assert asyncio.run(engine.cancel("nope")) is False


def test_cancel_stops_new_work():
    urls = make_urls(10)
    extractor = ScriptedExtractor(delay=0.02)
    repository = InMemoryBuildRepository()
    engine = make_engine(extractor, repository=repository)

    async def _run():
        await seed_build(repository, "job-cancel", urls)
        await engine.start("job-cancel", make_package(), urls, engine.settings.job_options(batch_size=2))
        await asyncio.sleep(0.05)
        assert await engine.cancel("job-cancel") is True
        assert await engine.cancel("job-cancel") is False
        final = await engine.wait("job-cancel")
        processed = final.progress.processed_urls
        await asyncio.sleep(0.05)
        return final, processed, await repository.find_build("job-cancel")

    final, processed, build = asyncio.run(_run())
    assert final.status is ExecutionStatus.CANCELLED
    assert final.cancel_requested
    assert final.end_time is not None
    assert final.progress.processed_urls == processed
    assert processed < 10
    assert len(extractor.calls) < 10
    assert build.status is BuildStatus.CANCELLED
    assert build.error == CANCELLED_MESSAGE


def test_pause_and_resume_guards():
    urls = make_urls(6)
    extractor = ScriptedExtractor(delay=0.01)
    engine = make_engine(extractor)

    async def _run():
        assert await engine.pause("unknown") is False
        await engine.start("job-pause", make_package(), urls, engine.settings.job_options(batch_size=2))
        assert await engine.resume("job-pause") is False
        assert await engine.pause("job-pause") is True
        assert await engine.pause("job-pause") is False
        assert engine.get_state("job-pause").status is ExecutionStatus.PAUSED
        await asyncio.sleep(0.05)
        held = engine.get_state("job-pause").progress.processed_urls
        await asyncio.sleep(0.1)
        assert engine.get_state("job-pause").progress.processed_urls == held
        assert await engine.resume("job-pause") is True
        return held, await engine.wait("job-pause")

    held, final = asyncio.run(_run())
    assert held < 6
    assert final.status is ExecutionStatus.COMPLETED
    assert final.progress.processed_urls == 6


def test_cancel_while_paused_ends_job():
    urls = make_urls(6)
    engine = make_engine(ScriptedExtractor(delay=0.01))

    async def _run():
        await engine.start("job-pc", make_package(), urls, engine.settings.job_options(batch_size=2))
        assert await engine.pause("job-pc") is True
        await asyncio.sleep(0.03)
        assert await engine.cancel("job-pc") is True
        return await engine.wait("job-pc")

    final = asyncio.run(_run())
    assert final.status is ExecutionStatus.CANCELLED
    assert final.progress.processed_urls < 6


def test_batch_failure_is_recorded_and_cleared_when_retries_recover():
    urls = make_urls(5)
    limiter = FailingLimiter(fail_on_call=2)
    repository = InMemoryBuildRepository()
    engine = make_engine(ScriptedExtractor(), repository=repository, rate_limiter=limiter)

    async def _run():
        await seed_build(repository, "job-batch", urls)
        await engine.start("job-batch", make_package(), urls, engine.settings.job_options(batch_size=5))
        final = await engine.wait("job-batch")
        return final, await repository.find_build("job-batch")

    final, build = asyncio.run(_run())
    assert final.progress.processed_urls == 5
    assert final.progress.retried_urls == 4
    assert final.status is ExecutionStatus.COMPLETED
    assert engine.metrics.get("batch_failures") == 1
    assert build.error_details["message"] == "Error processing batch 1: limiter backend unavailable"
    assert build.status is BuildStatus.COMPLETED
    assert build.error is None


def test_second_start_returns_existing_state():
    urls = make_urls(3)
    extractor = ScriptedExtractor()
    engine = make_engine(extractor)

    async def _run():
        first = await engine.start("job-dup", make_package(), urls)
        second = await engine.start("job-dup", make_package(), urls)
        await engine.wait("job-dup")
        return first, second

    first, second = asyncio.run(_run())
    assert first is second
    assert extractor.calls == urls


def test_persistence_failures_do_not_block_completion():
    urls = make_urls(2)
    engine = make_engine(ScriptedExtractor(), repository=BrokenStatusRepository())

    async def _run():
        await engine.start("job-db", make_package(), urls)
        return await engine.wait("job-db")

    final = asyncio.run(_run())
    assert final.status is ExecutionStatus.COMPLETED


def test_auxiliary_tools_are_passed_to_extractor():
    extractor = ScriptedExtractor()
    engine = make_engine(extractor)
    package = make_package(
        proxy={"toolId": "proxy_rotating_v1", "parameters": {"proxy_list": ["http://proxy-a:8080"]}},
        antiBlocking=[
            {"toolId": "antiblock_headers_v1", "parameters": {}},
            {"toolId": "antiblock_not_registered", "parameters": {}},
        ],
    )

    async def _run():
        await engine.start("job-aux", package, make_urls(1))
        return await engine.wait("job-aux")

    final = asyncio.run(_run())
    assert final.status is ExecutionStatus.COMPLETED
    assert isinstance(extractor.context.proxy, RotatingProxyProvider)
    assert len(extractor.context.strategies) == 1
    assert isinstance(extractor.context.strategies[0], HeaderRotationStrategy)


def test_cancel_while_start_is_persisting_spawns_no_work():
    urls = make_urls(4)
    extractor = ScriptedExtractor()
    repository = SlowStatusRepository()
    engine = make_engine(extractor, repository=repository)

    async def _run():
        await seed_build(repository, "job-early", urls)
        starting = asyncio.create_task(engine.start("job-early", make_package(), urls))
        await asyncio.sleep(0)
        assert await engine.cancel("job-early") is True
        state = await starting
        final = await engine.wait("job-early")
        leftover = [task for task in asyncio.all_tasks() if task is not asyncio.current_task()]
        return state, final, leftover, await repository.find_build("job-early")

    state, final, leftover, build = asyncio.run(_run())
    assert state.status is ExecutionStatus.CANCELLED
    assert final.status is ExecutionStatus.CANCELLED
    assert leftover == []
    assert extractor.context is None
    assert extractor.calls == []
    assert engine.metrics.get("jobs_started") == 0
    assert build.status is BuildStatus.CANCELLED


def test_progress_is_logged_while_running():
    urls = make_urls(6)
    engine = make_engine(ScriptedExtractor(delay=0.02), progress_interval_s=0.02)

    async def _run():
        await engine.start("job-progress", make_package(), urls, engine.settings.job_options(batch_size=3))
        return await engine.wait("job-progress")

    with capture_logs() as logs:
        final = asyncio.run(_run())
    progress = [entry for entry in logs if entry["event"] == "scrape_progress"]
    assert final.status is ExecutionStatus.COMPLETED
    assert progress
    assert progress[0]["job_id"] == "job-progress"
    assert progress[0]["total_urls"] == 6
    assert 0 <= progress[0]["percent_complete"] <= 100
