"""Registry of tool factories keyed by tool id."""
from __future__ import annotations

from typing import Callable, Dict, List, Optional, Type, Union

import structlog

from fullscrape.errors import ToolResolutionError
from fullscrape.tools.base import AntiBlockStrategy, Extractor, ProxyProvider, Tool

LOGGER = structlog.get_logger(__name__)

ToolFactory = Callable[[], Tool]
AuxiliaryTool = Union[ProxyProvider, AntiBlockStrategy]


class ToolRegistry:
    """Creates a fresh tool instance per job from registered factories."""

    def __init__(self) -> None:
        self._factories: Dict[str, ToolFactory] = {}
        self._kinds: Dict[str, Type[Tool]] = {}

    def register(self, tool_cls: Type[Tool], factory: Optional[ToolFactory] = None) -> None:
        """Register ``tool_cls`` under its ``tool_id``; a later registration wins."""
        tool_id = tool_cls.tool_id
        if not tool_id:
            raise ValueError(f"{tool_cls.__name__} does not declare a tool_id")
        if tool_id in self._factories:
            LOGGER.warning("tool_overwritten", tool_id=tool_id)
        self._factories[tool_id] = factory or tool_cls
        self._kinds[tool_id] = tool_cls
        LOGGER.debug("tool_registered", tool_id=tool_id, name=tool_cls.name or tool_cls.__name__)

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._factories

    def create_extractor(self, tool_id: Optional[str]) -> Extractor:
        """Instantiate the extractor for ``tool_id`` or raise ``ToolResolutionError``."""
        if not tool_id or tool_id not in self._factories:
            raise ToolResolutionError(tool_id)
        if not issubclass(self._kinds[tool_id], Extractor):
            raise ToolResolutionError(tool_id)
        return self._factories[tool_id]()  # type: ignore[return-value]

    def create_auxiliary(self, tool_id: str) -> Optional[AuxiliaryTool]:
        """Instantiate an auxiliary tool, returning None when it is unknown."""
        kind = self._kinds.get(tool_id)
        if kind is None or not issubclass(kind, (ProxyProvider, AntiBlockStrategy)):
            return None
        return self._factories[tool_id]()  # type: ignore[return-value]

    def list_tools(self) -> List[Dict[str, str]]:
        """Describe every registered tool for discovery."""
        described: List[Dict[str, str]] = []
        for tool_id, kind in sorted(self._kinds.items()):
            if issubclass(kind, Extractor):
                category = "scraper"
            elif issubclass(kind, ProxyProvider):
                category = "proxy"
            else:
                category = "anti-blocking"
            described.append(
                {
                    "tool_id": tool_id,
                    "name": kind.name or kind.__name__,
                    "type": category,
                    "description": kind.description,
                }
            )
        return described


def default_registry() -> ToolRegistry:
    """Build a registry holding the built-in tools."""
    from fullscrape.tools.antiblock import HeaderRotationStrategy
    from fullscrape.tools.http_extractor import HttpCssExtractor
    from fullscrape.tools.proxy import RotatingProxyProvider

    registry = ToolRegistry()
    registry.register(HttpCssExtractor)
    registry.register(RotatingProxyProvider)
    registry.register(HeaderRotationStrategy)
    return registry
