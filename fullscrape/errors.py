"""Exception types raised by the scrape engine and its control surface."""
from __future__ import annotations

from typing import Optional


class ScrapeEngineError(Exception):
    """Base class for errors raised deliberately by fullscrape."""

    code: str = "scrape_engine_error"


class ToolResolutionError(ScrapeEngineError):
    """The configuration package names a tool that is not registered."""

    code = "tool_not_found"

    def __init__(self, tool_id: Optional[str]) -> None:
        self.tool_id = tool_id
        if tool_id:
            message = f"Scraper tool with ID '{tool_id}' not found in registry"
        else:
            message = "Configuration package is missing scraper tool definition"
        super().__init__(message)


class ToolInitializationError(ScrapeEngineError):
    """A tool rejected its configuration during initialisation."""

    code = "tool_initialization_failed"

    def __init__(self, tool_id: str, reason: str) -> None:
        self.tool_id = tool_id
        super().__init__(f"[{tool_id}] {reason}")


class PackageValidationError(ScrapeEngineError):
    """A configuration package payload failed validation."""

    code = "invalid_package"


class BuildNotFoundError(ScrapeEngineError):
    code = "build_not_found"

    def __init__(self, build_id: str) -> None:
        self.build_id = build_id
        super().__init__(f"Build with ID '{build_id}' not found")


class InvalidBuildStateError(ScrapeEngineError):
    """The build exists but cannot be scraped in its current shape or status."""

    code = "invalid_build_state"

    def __init__(self, build_id: str, message: str, current_status: Optional[str] = None) -> None:
        self.build_id = build_id
        self.current_status = current_status
        super().__init__(message)
