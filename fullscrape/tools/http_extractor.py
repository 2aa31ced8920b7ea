"""Static HTML extractor: httpx fetch plus BeautifulSoup CSS selection."""
from __future__ import annotations

import time
from typing import Any, Dict, Optional

import httpx
import structlog
from bs4 import BeautifulSoup

from fullscrape.domain.package import ConfigurationPackage, ToolConfiguration
from fullscrape.errors import ToolInitializationError
from fullscrape.tools.base import Extractor, ToolContext, ToolResult

LOGGER = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = "fullscrape/0.1 (+https://example.invalid/bot)"
DEFAULT_TIMEOUT_MS = 5000


def _value_from_element(element, attribute: str) -> Optional[str]:
    if attribute == "text":
        text = element.get_text(strip=True)
        return text or None
    if attribute == "html":
        inner = element.decode_contents().strip()
        return inner or None
    value = element.get(attribute)
    if isinstance(value, list):
        value = " ".join(value)
    return value.strip() if value else None


def extract_fields(html: str, selectors: Dict[str, str], attribute: str = "text") -> Dict[str, Optional[str]]:
    """Apply each CSS selector to ``html`` and return the first match per key."""
    soup = BeautifulSoup(html, "html.parser")
    payload: Dict[str, Optional[str]] = {}
    for key, selector in selectors.items():
        element = soup.select_one(selector)
        payload[key] = None if element is None else _value_from_element(element, attribute)
    return payload


class HttpCssExtractor(Extractor):
    """Fetches a page over HTTP and extracts fields with CSS selectors.

    Does not execute JavaScript. ``parameters`` accepts ``selectors`` (required),
    ``attribute`` (``text``, ``html`` or an attribute name) and ``timeout_ms``.
    """

    tool_id = "scraper_fetch_css_v1"
    name = "HTTP + CSS Scraper"
    description = "Fetches HTML with httpx and extracts data using BeautifulSoup CSS selectors."

    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self._transport = transport
        self._user_agent = user_agent
        self._selectors: Dict[str, str] = {}
        self._attribute = "text"
        self._timeout = DEFAULT_TIMEOUT_MS / 1000
        self._context = ToolContext()
        self._clients: Dict[Optional[str], httpx.AsyncClient] = {}
        self._initialized = False

    async def initialize(self, config: ToolConfiguration, context: Optional[ToolContext] = None) -> None:
        params = config.parameters
        selectors = params.get("selectors")
        if not isinstance(selectors, dict) or not selectors:
            raise ToolInitializationError(self.tool_id, "Missing required 'selectors' parameter in configuration")
        self._selectors = {str(key): str(value) for key, value in selectors.items()}
        self._attribute = str(params.get("attribute", "text"))
        timeout_ms = params.get("timeout_ms", DEFAULT_TIMEOUT_MS)
        if not isinstance(timeout_ms, (int, float)) or timeout_ms <= 0:
            raise ToolInitializationError(self.tool_id, "'timeout_ms' must be a positive number")
        self._timeout = timeout_ms / 1000
        self._context = context or ToolContext()
        self._initialized = True
        LOGGER.info("tool_initialized", tool_id=self.tool_id, selectors=sorted(self._selectors))

    def _client_for(self, proxy: Optional[str]) -> httpx.AsyncClient:
        client = self._clients.get(proxy)
        if client is None:
            client = httpx.AsyncClient(
                headers={"User-Agent": self._user_agent},
                timeout=self._timeout,
                follow_redirects=True,
                proxy=proxy,
                transport=self._transport,
            )
            self._clients[proxy] = client
        return client

    async def execute(self, url: str, package: ConfigurationPackage) -> ToolResult:
        if not self._initialized:
            return ToolResult.failure(url, f"[{self.tool_id}] Tool not initialized with configuration before execution")
        options: Dict[str, Any] = await self._context.request_options(url)
        client = self._client_for(options.get("proxy"))
        start = time.perf_counter()
        try:
            response = await client.get(url, headers=options.get("headers") or None)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning("fetch_failed", tool_id=self.tool_id, url=url, reason=str(exc))
            return ToolResult.failure(url, f"[{self.tool_id}] Failed to execute for {url}: {exc}")
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        metadata = {
            "status_code": response.status_code,
            "final_url": str(response.url),
            "elapsed_ms": elapsed_ms,
        }
        try:
            data = extract_fields(response.text, self._selectors, self._attribute)
        except Exception as exc:  # soupsieve raises on malformed selectors
            return ToolResult(
                url=url,
                success=False,
                error=f"[{self.tool_id}] Extraction failed: {exc}",
                metadata=metadata,
            )
        return ToolResult(url=url, success=True, data=data, metadata=metadata)

    async def cleanup(self) -> None:
        clients, self._clients = self._clients, {}
        for client in clients.values():
            await client.aclose()
        self._initialized = False
