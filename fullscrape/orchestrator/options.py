"""Validated per-job options and engine-wide settings."""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_SCRAPE_TIMEOUT_MS = 2 * 60 * 60 * 1000
DEFAULT_BATCH_SIZE = 20
DEFAULT_RATE_LIMIT_RPS = 5.0
DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_BASE_RETRY_DELAY_MS = 5000
PROGRESS_UPDATE_INTERVAL_S = 30.0
PAUSE_POLL_INTERVAL_S = 1.0


class ExecutionOptions(BaseModel):
    """Options recognised by ``ScrapeExecutionEngine.start``.

    ``rate_limit_rps`` left as None keeps the shared limiter's current rate.
    """

    model_config = ConfigDict(frozen=True)

    timeout_ms: int = Field(default=DEFAULT_SCRAPE_TIMEOUT_MS, gt=0)
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    rate_limit_rps: Optional[float] = Field(default=None, ge=0)
    max_retry_attempts: int = Field(default=DEFAULT_MAX_RETRY_ATTEMPTS, ge=1)
    base_retry_delay_ms: int = Field(default=DEFAULT_BASE_RETRY_DELAY_MS, ge=0)


class EngineSettings(BaseModel):
    """The ``[engine]`` table of ``config/settings.toml``."""

    timeout_ms: int = Field(default=DEFAULT_SCRAPE_TIMEOUT_MS, gt=0)
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    rate_limit_rps: float = Field(default=DEFAULT_RATE_LIMIT_RPS, ge=0)
    max_retry_attempts: int = Field(default=DEFAULT_MAX_RETRY_ATTEMPTS, ge=1)
    base_retry_delay_ms: int = Field(default=DEFAULT_BASE_RETRY_DELAY_MS, ge=0)
    progress_interval_s: float = Field(default=PROGRESS_UPDATE_INTERVAL_S, gt=0)
    pause_poll_interval_s: float = Field(default=PAUSE_POLL_INTERVAL_S, gt=0)

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "EngineSettings":
        return cls(**settings.get("engine", {}))

    def job_options(self, **overrides: Any) -> ExecutionOptions:
        """Merge non-None overrides over the configured defaults."""
        values: Dict[str, Any] = {
            "timeout_ms": self.timeout_ms,
            "batch_size": self.batch_size,
            "max_retry_attempts": self.max_retry_attempts,
            "base_retry_delay_ms": self.base_retry_delay_ms,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return ExecutionOptions(**values)
