"""Capability interfaces implemented by extraction and auxiliary tools."""
from __future__ import annotations

import abc
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from fullscrape.domain.package import ConfigurationPackage, ToolConfiguration


@dataclass(frozen=True)
class ToolResult:
    """Outcome of running an extractor against a single URL."""

    url: str
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(cls, url: str, error: str, **metadata: Any) -> "ToolResult":
        return cls(url=url, success=False, error=error, metadata=metadata or None)

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


class Tool(abc.ABC):
    """Common surface of every tool known to the registry."""

    tool_id: str = ""
    name: str = ""
    description: str = ""

    async def cleanup(self) -> None:
        """Release resources held by the tool. Default is a no-op."""


class ProxyProvider(Tool):
    """Auxiliary capability: choose an outbound proxy for a URL."""

    @abc.abstractmethod
    async def initialize(self, config: ToolConfiguration) -> None:
        ...

    @abc.abstractmethod
    async def get_proxy_for_url(self, url: str) -> Optional[str]:
        ...


class AntiBlockStrategy(Tool):
    """Auxiliary capability: adjust outgoing request options to avoid blocking."""

    @abc.abstractmethod
    async def initialize(self, config: ToolConfiguration) -> None:
        ...

    @abc.abstractmethod
    def apply(self, request_options: Dict[str, Any]) -> Dict[str, Any]:
        ...


@dataclass
class ToolContext:
    """Auxiliary capabilities made available to an extractor for one job."""

    proxy: Optional[ProxyProvider] = None
    strategies: List[AntiBlockStrategy] = field(default_factory=list)

    async def request_options(self, url: str) -> Dict[str, Any]:
        """Build request options for ``url`` by consulting every auxiliary tool."""
        options: Dict[str, Any] = {"headers": {}}
        if self.proxy is not None:
            proxy = await self.proxy.get_proxy_for_url(url)
            if proxy:
                options["proxy"] = proxy
        for strategy in self.strategies:
            options = strategy.apply(options)
        return options


class Extractor(Tool):
    """Primary capability: extract data from one URL at a time."""

    @abc.abstractmethod
    async def initialize(self, config: ToolConfiguration, context: Optional[ToolContext] = None) -> None:
        """Prepare the tool; raise ``ToolInitializationError`` on unusable config."""

    @abc.abstractmethod
    async def execute(self, url: str, package: ConfigurationPackage) -> ToolResult:
        """Extract ``url``. Failures may be returned or raised."""
