"""Validated representation of a configuration package."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fullscrape.errors import PackageValidationError

SUPPORTED_SCHEMA_VERSIONS = {"1.0"}


class ToolConfiguration(BaseModel):
    """Configuration for a single tool: its registry id and free-form parameters."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    tool_id: str = Field(min_length=1, alias="toolId")
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ConfigurationPackage(BaseModel):
    """Declarative description of which extraction tool to run and how.

    Only ``scraper.tool_id`` matters to the engine; everything else is handed
    to the tools untouched.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    schema_version: str = Field(default="1.0", alias="schemaVersion")
    package_id: Optional[str] = Field(default=None, alias="packageId")
    description: Optional[str] = None
    scraper: ToolConfiguration
    proxy: Optional[ToolConfiguration] = None
    anti_blocking: List[ToolConfiguration] = Field(default_factory=list, alias="antiBlocking")
    expected_output_schema: Optional[Dict[str, Any]] = Field(default=None, alias="expectedOutputSchema")

    @field_validator("schema_version")
    @classmethod
    def _known_version(cls, value: str) -> str:
        if value not in SUPPORTED_SCHEMA_VERSIONS:
            raise ValueError(f"Unsupported schema version: {value}")
        return value

    def auxiliary_tools(self) -> List[ToolConfiguration]:
        """Return the proxy and anti-blocking configurations in initialisation order."""
        tools: List[ToolConfiguration] = []
        if self.proxy is not None:
            tools.append(self.proxy)
        tools.extend(self.anti_blocking)
        return tools


def parse_package(payload: Dict[str, Any]) -> ConfigurationPackage:
    """Validate a raw mapping, raising ``PackageValidationError`` on bad input."""
    try:
        return ConfigurationPackage.model_validate(payload)
    except ValidationError as exc:
        raise PackageValidationError(f"Invalid configuration package: {exc}") from exc


def load_package(path: Path) -> ConfigurationPackage:
    """Read and validate a configuration package stored as JSON."""
    try:
        payload = orjson.loads(path.read_bytes())
    except orjson.JSONDecodeError as exc:
        raise PackageValidationError(f"Package file {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise PackageValidationError(f"Package file {path} must contain a JSON object")
    return parse_package(payload)
