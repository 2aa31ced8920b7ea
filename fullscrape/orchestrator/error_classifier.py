"""Turn raw failures into structured error records for persistence."""
from __future__ import annotations

import asyncio
import enum
import traceback
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Optional, Sequence

import httpx
import orjson
from pydantic import ValidationError

from fullscrape.errors import (
    PackageValidationError,
    ScrapeEngineError,
    ToolInitializationError,
    ToolResolutionError,
)
from fullscrape.orchestrator.jobs import JobExecutionState, utcnow


class ErrorSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, enum.Enum):
    VALIDATION = "validation"
    DATABASE = "database"
    NETWORK = "network"
    SCRAPING = "scraping"
    EXECUTION = "execution"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


SAFE_CONTEXT_KEYS = ("job_id", "operation", "batch_index", "timestamp")


@dataclass(frozen=True)
class ErrorRecord:
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    timestamp: str
    type: Optional[str] = None
    code: Optional[str] = None
    stack: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {key: value for key, value in asdict(self).items() if value is not None}
        payload["category"] = self.category.value
        payload["severity"] = self.severity.value
        return payload


def _infer_category(error: BaseException) -> ErrorCategory:
    if isinstance(error, (ToolResolutionError, ToolInitializationError)):
        return ErrorCategory.CONFIGURATION
    if isinstance(error, (PackageValidationError, ValidationError)):
        return ErrorCategory.VALIDATION
    if isinstance(error, (httpx.TransportError, ConnectionError, asyncio.TimeoutError)):
        return ErrorCategory.NETWORK
    if isinstance(error, httpx.HTTPError):
        return ErrorCategory.SCRAPING
    return ErrorCategory.EXECUTION


def _error_code(error: BaseException) -> Optional[str]:
    if isinstance(error, ScrapeEngineError):
        return error.code
    code = getattr(error, "code", None)
    return code if isinstance(code, str) else None


def _describe(raw: Any) -> str:
    if raw is None:
        return "Unknown error occurred"
    try:
        return orjson.dumps(raw, default=str).decode()
    except TypeError:
        return repr(raw)


class ErrorClassifier:
    """Builds ``ErrorRecord`` objects. Never raises; has no side effects."""

    def classify(
        self,
        job_id: str,
        raw_error: Any,
        context: Optional[Dict[str, Any]] = None,
        *,
        category: Optional[ErrorCategory] = None,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        operation: str = "fullScrape.execution",
    ) -> ErrorRecord:
        merged: Dict[str, Any] = {"job_id": job_id, "operation": operation}
        if isinstance(context, dict):
            merged.update(context)
        try:
            if isinstance(raw_error, BaseException):
                stack = "".join(traceback.format_exception(type(raw_error), raw_error, raw_error.__traceback__))
                return ErrorRecord(
                    message=str(raw_error) or type(raw_error).__name__,
                    category=category or _infer_category(raw_error),
                    severity=severity,
                    timestamp=utcnow().isoformat(),
                    type=type(raw_error).__name__,
                    code=_error_code(raw_error),
                    stack=stack,
                    context=merged,
                )
            if isinstance(raw_error, str) and raw_error:
                return ErrorRecord(
                    message=raw_error,
                    category=category or ErrorCategory.SCRAPING,
                    severity=severity,
                    timestamp=utcnow().isoformat(),
                    type="Error",
                    context=merged,
                )
        except Exception as exc:  # a broken __str__ must not escape the classifier
            merged["classifier_error"] = repr(exc)
        return ErrorRecord(
            message=_describe(raw_error),
            category=ErrorCategory.UNKNOWN,
            severity=severity,
            timestamp=utcnow().isoformat(),
            context=merged,
        )

    def classify_initialization_failure(self, job_id: str, error: Any) -> ErrorRecord:
        return self.classify(
            job_id,
            error,
            category=ErrorCategory.CONFIGURATION,
            operation="fullScrape.initialization",
        )

    def classify_timeout(self, job_id: str, state: JobExecutionState) -> ErrorRecord:
        progress = state.progress
        return ErrorRecord(
            message="Scrape execution timed out",
            category=ErrorCategory.SCRAPING,
            severity=ErrorSeverity.ERROR,
            timestamp=utcnow().isoformat(),
            type="TimeoutError",
            context={
                "job_id": job_id,
                "operation": "fullScrape.timeout",
                "elapsed_time_ms": state.elapsed_ms(),
                "processed_urls": progress.processed_urls,
                "total_urls": progress.total_urls,
                "successful_urls": progress.successful_urls,
                "failed_urls": progress.failed_urls,
            },
        )

    def classify_batch_failure(
        self,
        job_id: str,
        batch_index: int,
        error: Any,
        urls: Sequence[str],
    ) -> ErrorRecord:
        record = self.classify(
            job_id,
            error,
            {
                "batch_index": batch_index,
                "batch_size": len(urls),
                "affected_urls": list(urls),
            },
            category=ErrorCategory.SCRAPING,
            severity=ErrorSeverity.WARNING,
            operation="fullScrape.batchProcessing",
        )
        return replace(record, message=f"Error processing batch {batch_index + 1}: {record.message}")

    def classify_partial_failure(
        self,
        job_id: str,
        message: str,
        successful_urls: int,
        failed_urls: int,
    ) -> ErrorRecord:
        return self.classify(
            job_id,
            message,
            {"successful_urls": successful_urls, "failed_urls": failed_urls},
            category=ErrorCategory.SCRAPING,
            severity=ErrorSeverity.WARNING,
        )

    @staticmethod
    def sanitize(record: ErrorRecord) -> Dict[str, Any]:
        """Drop stack traces and non-whitelisted context before showing a record."""
        payload = record.to_dict()
        payload.pop("stack", None)
        payload.pop("metadata", None)
        context = payload.pop("context", None) or {}
        safe = {key: context[key] for key in SAFE_CONTEXT_KEYS if key in context}
        if safe:
            payload["context"] = safe
        return payload
