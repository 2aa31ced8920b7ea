"""Proxy rotation over a configured list of endpoints."""
from __future__ import annotations

import itertools
import random
from typing import Iterator, List, Optional

from fullscrape.domain.package import ToolConfiguration
from fullscrape.errors import ToolInitializationError
from fullscrape.tools.base import ProxyProvider

ROTATION_MODES = {"round-robin", "random"}


class RotatingProxyProvider(ProxyProvider):
    """Hands out proxies from ``parameters.proxy_list``."""

    tool_id = "proxy_rotating_v1"
    name = "Rotating Proxy Provider"
    description = "Selects an outbound proxy per request, round-robin or at random."

    def __init__(self, *, rng: Optional[random.Random] = None) -> None:
        self._proxies: List[str] = []
        self._mode = "round-robin"
        self._cycle: Optional[Iterator[str]] = None
        self._rng = rng or random.Random()

    async def initialize(self, config: ToolConfiguration) -> None:
        proxies = config.parameters.get("proxy_list") or []
        if not isinstance(proxies, list) or not all(isinstance(item, str) for item in proxies):
            raise ToolInitializationError(self.tool_id, "'proxy_list' must be a list of proxy URLs")
        mode = config.parameters.get("rotation_mode", "round-robin")
        if mode not in ROTATION_MODES:
            raise ToolInitializationError(self.tool_id, f"Unknown rotation_mode '{mode}'")
        self._proxies = list(proxies)
        self._mode = mode
        self._cycle = itertools.cycle(self._proxies) if self._proxies else None

    async def get_proxy_for_url(self, url: str) -> Optional[str]:
        if not self._proxies:
            return None
        if self._mode == "random":
            return self._rng.choice(self._proxies)
        return next(self._cycle)  # type: ignore[arg-type]

    async def cleanup(self) -> None:
        self._proxies = []
        self._cycle = None
