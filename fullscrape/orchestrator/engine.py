"""Full scrape execution engine: batching, retries, pause/cancel and timeouts."""
from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import structlog

from fullscrape.domain.package import ConfigurationPackage
from fullscrape.observability.metrics import MetricsRegistry
from fullscrape.observability.tracing import clear_context, log_retry, set_context, span
from fullscrape.orchestrator.error_classifier import ErrorClassifier, ErrorRecord
from fullscrape.orchestrator.jobs import ExecutionStatus, JobExecutionState
from fullscrape.orchestrator.options import EngineSettings, ExecutionOptions
from fullscrape.orchestrator.rate_limiter import RateLimiter
from fullscrape.orchestrator.retry import RetryTracker
from fullscrape.orchestrator.scheduler import UrlBatch, plan_batches
from fullscrape.orchestrator.state_store import JobStateStore
from fullscrape.storage.repository import BuildRepository, BuildStatus, InMemoryBuildRepository
from fullscrape.tools.base import AntiBlockStrategy, Extractor, ProxyProvider, Tool, ToolContext, ToolResult
from fullscrape.tools.registry import ToolRegistry, default_registry

LOGGER = structlog.get_logger(__name__)

CANCELLED_MESSAGE = "Scrape execution cancelled by user"
TIMEOUT_MESSAGE = "Scrape execution timed out"

BUILD_STATUS_FOR = {
    ExecutionStatus.RUNNING: BuildStatus.SCRAPING_IN_PROGRESS,
    ExecutionStatus.COMPLETED: BuildStatus.COMPLETED,
    ExecutionStatus.PARTIAL_SUCCESS: BuildStatus.PARTIAL_SUCCESS,
    ExecutionStatus.FAILED: BuildStatus.FAILED,
    ExecutionStatus.CANCELLED: BuildStatus.CANCELLED,
    ExecutionStatus.TIMEOUT: BuildStatus.FAILED,
}

OUTCOME_METRIC = {
    ExecutionStatus.COMPLETED: "jobs_completed",
    ExecutionStatus.PARTIAL_SUCCESS: "jobs_partial",
    ExecutionStatus.FAILED: "jobs_failed",
    ExecutionStatus.CANCELLED: "jobs_cancelled",
    ExecutionStatus.TIMEOUT: "jobs_timed_out",
}

TrackerFactory = Callable[[int, int], RetryTracker]


@dataclass
class _JobRun:
    """Resources the engine holds for one job while it is being executed."""

    job_id: str
    package: ConfigurationPackage
    urls: List[str]
    options: ExecutionOptions
    results: List[ToolResult] = field(default_factory=list)
    positions: Dict[str, int] = field(default_factory=dict)
    tool: Optional[Extractor] = None
    auxiliaries: List[Tool] = field(default_factory=list)
    task: Optional[asyncio.Task] = None
    watchdog: Optional[asyncio.Task] = None
    progress_task: Optional[asyncio.Task] = None
    cleaned_up: bool = False


class ScrapeExecutionEngine:
    """Runs scrape jobs as background asyncio tasks.

    Each job gets one processing task which walks the URL list in fixed-size
    batches, gating every tool call through the shared ``RateLimiter`` and
    deferring failed URLs to a single retry pass. A watchdog task enforces the
    job's wall-clock timeout and a second task logs progress periodically.

    Control calls (``cancel``, ``pause``, ``resume``) only flip state in the
    ``JobStateStore``; the processing task observes them at batch boundaries
    and before each URL. An in-flight tool call is never interrupted.
    """

    def __init__(
        self,
        *,
        registry: ToolRegistry,
        repository: BuildRepository,
        state_store: Optional[JobStateStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        classifier: Optional[ErrorClassifier] = None,
        metrics: Optional[MetricsRegistry] = None,
        settings: Optional[EngineSettings] = None,
        tracker_factory: TrackerFactory = RetryTracker,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._registry = registry
        self._repository = repository
        self._store = state_store or JobStateStore()
        self._limiter = rate_limiter or RateLimiter(self._settings.rate_limit_rps)
        self._classifier = classifier or ErrorClassifier()
        self._metrics = metrics or MetricsRegistry()
        self._tracker_factory = tracker_factory
        self._runs: Dict[str, _JobRun] = {}

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    # ------------------------------------------------------------------
    # Public control surface

    async def start(
        self,
        job_id: str,
        package: ConfigurationPackage,
        urls: Sequence[str],
        options: Optional[ExecutionOptions] = None,
    ) -> JobExecutionState:
        """Begin executing ``urls`` for ``job_id`` and return without waiting.

        A job that is already tracked is not started twice; its existing state
        is returned instead.
        """
        existing = self._store.get_state(job_id)
        if existing is not None:
            LOGGER.info("scrape_job_already_tracked", job_id=job_id, status=existing.status.value)
            return existing

        options = options or self._settings.job_options()
        if options.rate_limit_rps is not None:
            self._limiter.set_rate_limit(options.rate_limit_rps)
        state = self._store.create_execution_state(job_id, len(urls), options.batch_size)
        run = _JobRun(job_id=job_id, package=package, urls=list(urls), options=options)
        self._runs[job_id] = run

        await self._persist_status(job_id, BuildStatus.SCRAPING_IN_PROGRESS)
        self._store.update_status(job_id, ExecutionStatus.RUNNING)
        if state.is_terminal:
            LOGGER.info("scrape_job_ended_before_start", job_id=job_id, status=state.status.value)
            return state
        self._metrics.incr("jobs_started")
        LOGGER.info(
            "scrape_job_started",
            job_id=job_id,
            tool_id=package.scraper.tool_id,
            total_urls=state.progress.total_urls,
            total_batches=state.progress.total_batches,
            batch_size=options.batch_size,
            timeout_ms=options.timeout_ms,
        )

        run.watchdog = asyncio.create_task(self._watchdog(job_id, options.timeout_ms))
        run.progress_task = asyncio.create_task(self._log_progress(job_id))
        run.task = asyncio.create_task(self._process(run))
        return state

    def get_state(self, job_id: str) -> Optional[JobExecutionState]:
        return self._store.get_state(job_id)

    async def wait(self, job_id: str) -> Optional[JobExecutionState]:
        """Wait for the job's processing task to finish and return its final state."""
        run = self._runs.get(job_id)
        if run is not None and run.task is not None:
            await asyncio.shield(run.task)
        return self._store.get_state(job_id)

    async def cancel(self, job_id: str) -> bool:
        """Cancel a tracked, non-terminal job. Returns False otherwise."""
        state = self._store.get_state(job_id)
        if state is None or state.is_terminal:
            return False
        run = self._runs.get(job_id)
        snapshot = list(run.results) if run is not None else None
        state = self._store.mark_cancelled(job_id, snapshot)
        if state is None or state.status is not ExecutionStatus.CANCELLED:
            return False
        LOGGER.info("scrape_job_cancelled", job_id=job_id, **state.progress.as_dict())
        self._count_outcome(state)
        self.cleanup(job_id)
        await self._persist_outcome(state)
        return True

    async def pause(self, job_id: str) -> bool:
        state = self._store.get_state(job_id)
        if state is None or state.status is not ExecutionStatus.RUNNING:
            return False
        self._store.mark_paused(job_id)
        LOGGER.info("scrape_job_paused", job_id=job_id)
        return True

    async def resume(self, job_id: str) -> bool:
        state = self._store.get_state(job_id)
        if state is None or state.status is not ExecutionStatus.PAUSED:
            return False
        self._store.mark_resumed(job_id)
        LOGGER.info("scrape_job_resumed", job_id=job_id)
        return True

    def cleanup(self, job_id: str) -> None:
        """Stop the job's watchdog and progress timers. Safe to call repeatedly."""
        run = self._runs.get(job_id)
        if run is None or run.cleaned_up:
            return
        run.cleaned_up = True
        current = asyncio.current_task()
        for timer in (run.watchdog, run.progress_task):
            if timer is not None and timer is not current and not timer.done():
                timer.cancel()
        LOGGER.debug("scrape_job_timers_released", job_id=job_id)

    # ------------------------------------------------------------------
    # Processing task

    async def _process(self, run: _JobRun) -> None:
        job_id = run.job_id
        set_context(job_id=job_id)
        try:
            try:
                tool = await self._initialize_tools(run)
            except Exception as exc:
                await self._fail_initialization(run, exc)
                return
            tracker = self._tracker_factory(run.options.max_retry_attempts, run.options.base_retry_delay_ms)
            await self._run_batches(run, tool, tracker)
            if self._should_stop(job_id):
                return
            await self._retry_pass(run, tool, tracker)
            if not await self._wait_until_runnable(job_id):
                return
            await self._finish(run, tracker)
        except Exception as exc:
            LOGGER.exception("scrape_job_crashed", job_id=job_id)
            await self._fail_unexpected(run, exc)
        finally:
            await self._release_tools(run)
            self.cleanup(job_id)
            clear_context()

    async def _initialize_tools(self, run: _JobRun) -> Extractor:
        package = run.package
        tool = self._registry.create_extractor(package.scraper.tool_id)
        run.tool = tool
        proxy: Optional[ProxyProvider] = None
        strategies: List[AntiBlockStrategy] = []
        for config in package.auxiliary_tools():
            auxiliary = self._registry.create_auxiliary(config.tool_id)
            if auxiliary is None:
                LOGGER.warning("auxiliary_tool_unknown", job_id=run.job_id, tool_id=config.tool_id)
                continue
            run.auxiliaries.append(auxiliary)
            await auxiliary.initialize(config)
            if isinstance(auxiliary, ProxyProvider):
                proxy = auxiliary
            else:
                strategies.append(auxiliary)
        await tool.initialize(package.scraper, ToolContext(proxy=proxy, strategies=strategies))
        return tool

    async def _run_batches(self, run: _JobRun, tool: Extractor, tracker: RetryTracker) -> None:
        job_id = run.job_id
        batches = plan_batches(run.urls, batch_size=run.options.batch_size)
        for batch in batches:
            if not await self._wait_until_runnable(job_id):
                LOGGER.info("scrape_batches_stopped", job_id=job_id, batch=batch.number)
                return
            LOGGER.info(
                "scrape_batch_start",
                job_id=job_id,
                batch=batch.number,
                total_batches=len(batches),
                size=len(batch.urls),
            )
            completed = 0
            try:
                for url in batch.urls:
                    if self._should_stop(job_id):
                        return
                    result = await self._limiter.execute(functools.partial(self._invoke_tool, run, tool, url))
                    self._record_result(run, tracker, url, result)
                    completed += 1
            except Exception as exc:
                await self._handle_batch_failure(run, tracker, batch, exc, batch.urls[completed:])
            if self._should_stop(job_id):
                return
            state = self._store.update_progress(job_id, current_batch=batch.number)
            if state is not None:
                LOGGER.info(
                    "scrape_batch_complete",
                    job_id=job_id,
                    batch=batch.number,
                    percent_complete=state.progress.percent_complete,
                )

    async def _invoke_tool(self, run: _JobRun, tool: Extractor, url: str) -> ToolResult:
        """Call the extractor for ``url``; any exception becomes a failed result."""
        with span(name="scrape_url", url=url, job_id=run.job_id):
            try:
                return await tool.execute(url, run.package)
            except Exception as exc:
                LOGGER.info("scrape_url_raised", job_id=run.job_id, url=url, error=repr(exc))
                return ToolResult.failure(url, str(exc) or type(exc).__name__)

    def _record_result(self, run: _JobRun, tracker: RetryTracker, url: str, result: ToolResult) -> None:
        state = self._store.get_state(run.job_id)
        if state is None or state.is_terminal:
            return
        run.positions[url] = len(run.results)
        run.results.append(result)
        progress = state.progress
        successful = progress.successful_urls
        failed = progress.failed_urls
        if result.success:
            successful += 1
            self._metrics.incr("urls_succeeded")
        else:
            failed += 1
            self._metrics.incr("urls_failed")
            decision = tracker.track_failed_url(url, result.error)
            LOGGER.info(
                "scrape_url_failed",
                job_id=run.job_id,
                url=url,
                error=result.error,
                attempts=decision.attempts_made,
                can_retry=decision.can_retry,
                retry_in_ms=decision.wait_time_ms,
            )
        self._metrics.incr("urls_processed")
        self._store.update_progress(
            run.job_id,
            processed_urls=progress.processed_urls + 1,
            successful_urls=successful,
            failed_urls=failed,
        )

    async def _handle_batch_failure(
        self,
        run: _JobRun,
        tracker: RetryTracker,
        batch: UrlBatch,
        error: Exception,
        remaining: Sequence[str],
    ) -> None:
        record = self._classifier.classify_batch_failure(run.job_id, batch.index, error, batch.urls)
        self._metrics.incr("batch_failures")
        LOGGER.error(
            "scrape_batch_failed",
            job_id=run.job_id,
            batch=batch.number,
            error=record.message,
            unprocessed=len(remaining),
        )
        for url in remaining:
            self._record_result(run, tracker, url, ToolResult.failure(url, record.message, batch_index=batch.index))
        await self._guarded(run.job_id, "update_error", self._repository.update_error(run.job_id, record))

    async def _retry_pass(self, run: _JobRun, tool: Extractor, tracker: RetryTracker) -> None:
        job_id = run.job_id
        due = tracker.get_urls_due_for_retry()
        if not due:
            return
        LOGGER.info("scrape_retry_pass", job_id=job_id, urls=len(due))
        for url in due:
            if not await self._wait_until_runnable(job_id):
                return
            state = self._store.get_state(job_id)
            if state is None:
                return
            record = tracker.get_record(url)
            log_retry(url=url, attempt=(record.attempts if record else 0) + 1, reason=record.last_error if record else "")
            self._store.update_progress(job_id, retried_urls=state.progress.retried_urls + 1)
            self._metrics.incr("retries_attempted")
            try:
                result = await self._limiter.execute(functools.partial(self._invoke_tool, run, tool, url))
            except Exception as exc:
                result = ToolResult.failure(url, str(exc) or type(exc).__name__)
            state = self._store.get_state(job_id)
            if state is None or state.is_terminal:
                return
            if not result.success:
                tracker.track_failed_url(url, result.error)
                continue
            tracker.track_successful_retry(url)
            position = run.positions.get(url)
            if position is None:
                run.positions[url] = len(run.results)
                run.results.append(result)
            else:
                run.results[position] = result
            self._metrics.incr("retries_succeeded")
            self._store.update_progress(
                job_id,
                successful_urls=state.progress.successful_urls + 1,
                failed_urls=max(state.progress.failed_urls - 1, 0),
            )

    async def _finish(self, run: _JobRun, tracker: RetryTracker) -> None:
        job_id = run.job_id
        state = self._store.get_state(job_id)
        if state is None:
            return
        progress = state.progress
        results = list(run.results)
        record: Optional[ErrorRecord] = None
        if progress.failed_urls == 0:
            state = self._store.mark_completed(job_id, results)
            expected = ExecutionStatus.COMPLETED
        elif progress.successful_urls == 0:
            message = f"All {progress.failed_urls} URLs failed to scrape successfully"
            record = self._classifier.classify_partial_failure(job_id, message, 0, progress.failed_urls)
            state = self._store.mark_failed(job_id, message, results)
            expected = ExecutionStatus.FAILED
        else:
            stats = tracker.get_retry_stats()
            message = (
                f"{progress.failed_urls} of {progress.total_urls} URLs failed to scrape successfully "
                f"({stats.max_retries_exceeded} exceeded max retries)"
            )
            record = self._classifier.classify_partial_failure(
                job_id, message, progress.successful_urls, progress.failed_urls
            )
            state = self._store.mark_partial_success(job_id, message, results)
            expected = ExecutionStatus.PARTIAL_SUCCESS
        if state is None or state.status is not expected:
            return
        LOGGER.info("scrape_job_finished", job_id=job_id, status=state.status.value, **state.progress.as_dict())
        self._count_outcome(state)
        self.cleanup(job_id)
        await self._persist_outcome(state, record)

    async def _fail_initialization(self, run: _JobRun, error: Exception) -> None:
        job_id = run.job_id
        record = self._classifier.classify_initialization_failure(job_id, error)
        LOGGER.error("scrape_job_initialization_failed", job_id=job_id, error=record.message)
        state = self._store.mark_failed(job_id, record.message)
        if state is None or state.status is not ExecutionStatus.FAILED:
            return
        self._count_outcome(state)
        self.cleanup(job_id)
        await self._persist_outcome(state, record)

    async def _fail_unexpected(self, run: _JobRun, error: Exception) -> None:
        job_id = run.job_id
        record = self._classifier.classify(job_id, error)
        message = f"Unexpected error during scrape execution: {record.message}"
        state = self._store.mark_failed(job_id, message, list(run.results))
        if state is None or state.status is not ExecutionStatus.FAILED:
            return
        self._count_outcome(state)
        self.cleanup(job_id)
        await self._persist_outcome(state, record)

    async def _release_tools(self, run: _JobRun) -> None:
        tools: List[Tool] = list(run.auxiliaries)
        if run.tool is not None:
            tools.insert(0, run.tool)
        for tool in tools:
            try:
                await tool.cleanup()
            except Exception as exc:
                LOGGER.warning("tool_cleanup_failed", job_id=run.job_id, tool_id=tool.tool_id, error=repr(exc))

    # ------------------------------------------------------------------
    # Control flow helpers

    def _should_stop(self, job_id: str) -> bool:
        state = self._store.get_state(job_id)
        return state is None or state.cancel_requested or state.is_terminal

    async def _wait_until_runnable(self, job_id: str) -> bool:
        """Block while the job is paused. False when it was cancelled or ended."""
        announced = False
        while True:
            state = self._store.get_state(job_id)
            if state is None or state.cancel_requested or state.is_terminal:
                return False
            if not state.pause_requested:
                return True
            if not announced:
                LOGGER.info("scrape_job_waiting_while_paused", job_id=job_id)
                announced = True
            await asyncio.sleep(self._settings.pause_poll_interval_s)

    async def _watchdog(self, job_id: str, timeout_ms: int) -> None:
        await asyncio.sleep(timeout_ms / 1000)
        state = self._store.get_state(job_id)
        if state is None or state.status is not ExecutionStatus.RUNNING:
            return
        run = self._runs.get(job_id)
        snapshot = list(run.results) if run is not None else None
        state = self._store.mark_timed_out(job_id, TIMEOUT_MESSAGE, snapshot)
        if state is None or state.status is not ExecutionStatus.TIMEOUT:
            return
        record = self._classifier.classify_timeout(job_id, state)
        LOGGER.warning("scrape_job_timed_out", job_id=job_id, timeout_ms=timeout_ms, **state.progress.as_dict())
        self._count_outcome(state)
        self.cleanup(job_id)
        await self._persist_outcome(state, record)

    async def _log_progress(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self._settings.progress_interval_s)
            state = self._store.get_state(job_id)
            if state is None or state.is_terminal:
                return
            LOGGER.info(
                "scrape_progress",
                job_id=job_id,
                status=state.status.value,
                percent_complete=state.progress.percent_complete,
                elapsed_ms=state.elapsed_ms(),
                **state.progress.as_dict(),
            )

    def _count_outcome(self, state: JobExecutionState) -> None:
        metric = OUTCOME_METRIC.get(state.status)
        if metric is not None:
            self._metrics.incr(metric)
        self._metrics.incr("job_duration_ms", state.elapsed_ms())

    # ------------------------------------------------------------------
    # Persistence

    async def _persist_outcome(self, state: JobExecutionState, record: Optional[ErrorRecord] = None) -> None:
        """Write results, error details and status for a terminal job, in that order."""
        job_id = state.job_id
        if state.results is not None:
            await self._guarded(job_id, "update_results", self._repository.update_results(job_id, state.results))
        if record is not None:
            await self._guarded(job_id, "update_error", self._repository.update_error(job_id, record))
        error = CANCELLED_MESSAGE if state.status is ExecutionStatus.CANCELLED else state.error
        # batch failures recovered by the retry pass leave error_details as history only
        clear_error = state.status is ExecutionStatus.COMPLETED
        await self._persist_status(job_id, BUILD_STATUS_FOR[state.status], error, clear_error=clear_error)

    async def _persist_status(
        self,
        job_id: str,
        status: BuildStatus,
        error: Optional[str] = None,
        *,
        clear_error: bool = False,
    ) -> None:
        await self._guarded(
            job_id,
            "update_status",
            self._repository.update_status(job_id, status, error, clear_error=clear_error),
        )

    async def _guarded(self, job_id: str, operation: str, pending) -> None:
        try:
            await pending
        except Exception as exc:
            LOGGER.error("persistence_failed", job_id=job_id, operation=operation, error=repr(exc))


def build_engine(
    settings: Optional[EngineSettings] = None,
    repository: Optional[BuildRepository] = None,
    *,
    registry: Optional[ToolRegistry] = None,
    metrics: Optional[MetricsRegistry] = None,
) -> ScrapeExecutionEngine:
    """Wire an engine with fresh collaborators for one process or test."""
    settings = settings or EngineSettings()
    return ScrapeExecutionEngine(
        registry=registry or default_registry(),
        repository=repository or InMemoryBuildRepository(),
        state_store=JobStateStore(),
        rate_limiter=RateLimiter(settings.rate_limit_rps),
        classifier=ErrorClassifier(),
        metrics=metrics or MetricsRegistry(),
        settings=settings,
    )
