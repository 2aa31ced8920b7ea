"""Build record persistence: the repository contract plus two implementations."""
from __future__ import annotations

import abc
import asyncio
import copy
import enum
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import orjson
import structlog

from fullscrape.orchestrator.error_classifier import ErrorRecord
from fullscrape.orchestrator.jobs import utcnow
from fullscrape.tools.base import ToolResult

LOGGER = structlog.get_logger(__name__)


class BuildStatus(str, enum.Enum):
    PENDING_ANALYSIS = "PENDING_ANALYSIS"
    GENERATING_SAMPLES = "GENERATING_SAMPLES"
    PENDING_USER_FEEDBACK = "PENDING_USER_FEEDBACK"
    READY_FOR_SCRAPING = "READY_FOR_SCRAPING"
    SCRAPING_IN_PROGRESS = "SCRAPING_IN_PROGRESS"
    COMPLETED = "COMPLETED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass
class Build:
    """Persisted job record: objective, URLs, package and outcome."""

    build_id: str
    target_urls: List[str]
    user_objective: str = ""
    status: BuildStatus = BuildStatus.PENDING_ANALYSIS
    error: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    final_package: Optional[Dict[str, Any]] = None
    results: Optional[List[Dict[str, Any]]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        payload["created_at"] = self.created_at.isoformat()
        payload["updated_at"] = self.updated_at.isoformat()
        return payload

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "Build":
        data = dict(payload)
        data["status"] = BuildStatus(data.get("status", BuildStatus.PENDING_ANALYSIS.value))
        for key in ("created_at", "updated_at"):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


class BuildRepository(abc.ABC):
    """Persistence collaborator consumed by the engine and the control surface."""

    @abc.abstractmethod
    async def create_build(
        self,
        target_urls: Sequence[str],
        *,
        user_objective: str = "",
        final_package: Optional[Dict[str, Any]] = None,
        status: BuildStatus = BuildStatus.PENDING_ANALYSIS,
        build_id: Optional[str] = None,
    ) -> Build:
        ...

    @abc.abstractmethod
    async def find_build(self, build_id: str) -> Optional[Build]:
        ...

    @abc.abstractmethod
    async def update_status(
        self,
        build_id: str,
        status: BuildStatus,
        error: Optional[str] = None,
        *,
        clear_error: bool = False,
    ) -> Optional[Build]:
        ...

    @abc.abstractmethod
    async def update_error(self, build_id: str, record: ErrorRecord) -> Optional[Build]:
        ...

    @abc.abstractmethod
    async def update_results(self, build_id: str, results: Sequence[ToolResult]) -> Optional[Build]:
        ...


class InMemoryBuildRepository(BuildRepository):
    """Dictionary-backed repository; the base for the JSON file variant."""

    def __init__(self) -> None:
        self._builds: Dict[str, Build] = {}
        self._lock = asyncio.Lock()

    async def _flush(self) -> None:
        """Hook for subclasses that persist after every write."""

    async def create_build(
        self,
        target_urls: Sequence[str],
        *,
        user_objective: str = "",
        final_package: Optional[Dict[str, Any]] = None,
        status: BuildStatus = BuildStatus.PENDING_ANALYSIS,
        build_id: Optional[str] = None,
    ) -> Build:
        build = Build(
            build_id=build_id or str(uuid.uuid4()),
            target_urls=list(target_urls),
            user_objective=user_objective,
            status=status,
            final_package=final_package,
        )
        async with self._lock:
            self._builds[build.build_id] = build
            await self._flush()
        return copy.deepcopy(build)

    async def find_build(self, build_id: str) -> Optional[Build]:
        async with self._lock:
            build = self._builds.get(build_id)
            return copy.deepcopy(build) if build is not None else None

    async def _update(self, build_id: str, **changes: Any) -> Optional[Build]:
        async with self._lock:
            build = self._builds.get(build_id)
            if build is None:
                LOGGER.warning("build_update_missing", build_id=build_id, fields=sorted(changes))
                return None
            for key, value in changes.items():
                setattr(build, key, value)
            build.updated_at = utcnow()
            await self._flush()
            return copy.deepcopy(build)

    async def update_status(
        self,
        build_id: str,
        status: BuildStatus,
        error: Optional[str] = None,
        *,
        clear_error: bool = False,
    ) -> Optional[Build]:
        """Set the build status. The stored error text is kept unless ``error`` or ``clear_error`` is given."""
        if clear_error:
            return await self._update(build_id, status=status, error=None)
        if error is None:
            return await self._update(build_id, status=status)
        return await self._update(build_id, status=status, error=error)

    async def update_error(self, build_id: str, record: ErrorRecord) -> Optional[Build]:
        return await self._update(build_id, error=record.message, error_details=record.to_dict())

    async def update_results(self, build_id: str, results: Sequence[ToolResult]) -> Optional[Build]:
        return await self._update(build_id, results=[result.to_dict() for result in results])


class JsonBuildRepository(InMemoryBuildRepository):
    """Keeps every build in one JSON document rewritten after each change."""

    def __init__(self, *, path: Path) -> None:
        super().__init__()
        self._path = path
        self._load_from_disk()

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        raw = self._path.read_bytes()
        if not raw.strip():
            return
        payload = orjson.loads(raw)
        for item in payload.get("builds", []):
            build = Build.from_json(item)
            self._builds[build.build_id] = build

    async def _flush(self) -> None:
        payload = {"builds": [build.to_json() for build in self._builds.values()]}
        data = orjson.dumps(payload, option=orjson.OPT_INDENT_2)
        await asyncio.to_thread(self._path.write_bytes, data)
