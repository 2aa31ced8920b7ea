"""Operator-facing control surface for scrape jobs backed by stored builds."""
from __future__ import annotations

from typing import Any, Dict, Optional

import structlog

from fullscrape.admin.status import build_status_report, persisted_status_report
from fullscrape.domain.package import parse_package
from fullscrape.errors import BuildNotFoundError, InvalidBuildStateError, PackageValidationError
from fullscrape.orchestrator.engine import ScrapeExecutionEngine
from fullscrape.storage.repository import BuildRepository, BuildStatus

LOGGER = structlog.get_logger(__name__)

STARTABLE_STATUSES = frozenset({BuildStatus.PENDING_USER_FEEDBACK, BuildStatus.READY_FOR_SCRAPING})


class ScrapeControl:
    """Start, inspect and cancel scrape jobs by build id."""

    def __init__(self, engine: ScrapeExecutionEngine, repository: BuildRepository) -> None:
        self._engine = engine
        self._repository = repository

    async def start(
        self,
        build_id: str,
        *,
        timeout_ms: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        build = await self._repository.find_build(build_id)
        if build is None:
            raise BuildNotFoundError(build_id)
        if build.status not in STARTABLE_STATUSES:
            raise InvalidBuildStateError(
                build_id,
                f"Build is in {build.status.value} status; expected one of "
                f"{', '.join(sorted(status.value for status in STARTABLE_STATUSES))}",
                current_status=build.status.value,
            )
        if not build.final_package:
            raise InvalidBuildStateError(build_id, "Build has no final configuration package", build.status.value)
        if not build.target_urls:
            raise InvalidBuildStateError(build_id, "Build has no target URLs", build.status.value)
        try:
            package = parse_package(build.final_package)
        except PackageValidationError as exc:
            raise InvalidBuildStateError(build_id, str(exc), build.status.value) from exc

        options = self._engine.settings.job_options(timeout_ms=timeout_ms, batch_size=batch_size)
        state = await self._engine.start(build_id, package, build.target_urls, options)
        LOGGER.info("scrape_requested", build_id=build_id, urls=len(build.target_urls))
        return build_status_report(state)

    async def status(self, build_id: str) -> Dict[str, Any]:
        state = self._engine.get_state(build_id)
        if state is not None:
            return build_status_report(state)
        build = await self._repository.find_build(build_id)
        if build is None:
            raise BuildNotFoundError(build_id)
        return persisted_status_report(build)

    async def cancel(self, build_id: str) -> bool:
        cancelled = await self._engine.cancel(build_id)
        if not cancelled and await self._repository.find_build(build_id) is None:
            raise BuildNotFoundError(build_id)
        return cancelled
