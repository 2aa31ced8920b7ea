"""Request header rotation used to look less like a single automated client."""
from __future__ import annotations

import itertools
from typing import Any, Dict, Iterator, List, Optional

from fullscrape.domain.package import ToolConfiguration
from fullscrape.errors import ToolInitializationError
from fullscrape.tools.base import AntiBlockStrategy

DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
]


class HeaderRotationStrategy(AntiBlockStrategy):
    """Rotates the User-Agent header and merges fixed extra headers."""

    tool_id = "antiblock_headers_v1"
    name = "Header Rotation"
    description = "Cycles User-Agent strings and adds configured headers to each request."

    def __init__(self) -> None:
        self._agents: Iterator[str] = itertools.cycle(DEFAULT_USER_AGENTS)
        self._extra: Dict[str, str] = {}

    async def initialize(self, config: ToolConfiguration) -> None:
        agents: Optional[List[str]] = config.parameters.get("user_agents")
        if agents is not None:
            if not isinstance(agents, list) or not agents:
                raise ToolInitializationError(self.tool_id, "'user_agents' must be a non-empty list")
            self._agents = itertools.cycle(agents)
        extra = config.parameters.get("extra_headers") or {}
        if not isinstance(extra, dict):
            raise ToolInitializationError(self.tool_id, "'extra_headers' must be a mapping")
        self._extra = {str(key): str(value) for key, value in extra.items()}

    def apply(self, request_options: Dict[str, Any]) -> Dict[str, Any]:
        headers = dict(request_options.get("headers") or {})
        headers.update(self._extra)
        headers["User-Agent"] = next(self._agents)
        return {**request_options, "headers": headers}
