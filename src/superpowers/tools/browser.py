"""
Browser tools.

The agent does not drive a browser itself.  Every handler forwards an action to a
:class:`BrowserBackend`, which in production is the extension's local HTTP bridge.
"""

import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Dict,
    List,
    Optional,
)
from urllib.parse import quote

import httpx

from superpowers.core.schema import (
    ParameterSpec,
    Tool,
    ToolParameters,
)
from superpowers.tools import (
    ToolHandler,
    ToolRegistry,
)

logger = logging.getLogger(__name__)

HISTORY_ACTIONS = ("back", "forward")


class BrowserActionError(RuntimeError):
    """Raised when the browser reports a failed action."""


def _tool(name: str, description: str, required: List[str] | None = None, **params: Any) -> Tool:
    properties = {
        key: ParameterSpec(type=spec[0], description=spec[1]) for key, spec in params.items()
    }
    return Tool(
        name=name,
        description=description,
        parameters=ToolParameters(properties=properties, required=required or []),
    )


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------
BROWSER_TOOLS: List[Tool] = [
    _tool("getCurrentTab", "Get information about the current active tab"),
    _tool(
        "clickElement",
        "Click on an element on the page.",
        ["selector"],
        selector=("string", "CSS selector for the element to click"),
    ),
    _tool(
        "fillInput",
        "Fill an input field with text.",
        ["selector", "value"],
        selector=("string", "CSS selector for the input element"),
        value=("string", "Text to fill in the input"),
    ),
    _tool(
        "navigateToUrl",
        "Navigate to a specific URL",
        ["url"],
        url=("string", "URL to navigate to"),
    ),
    _tool(
        "searchGoogle",
        "Search Google for a query",
        ["query"],
        query=("string", "Search query"),
    ),
    _tool(
        "getPageContent",
        "Get the markdown content of the current page. "
        "This is useful for answering questions about the page's content.",
        selector=("string", "CSS selector to get specific content (optional)"),
    ),
    _tool(
        "scrollToElement",
        "Scroll the page to a specific element.",
        ["selector"],
        selector=("string", "CSS selector for the element to scroll to."),
    ),
    _tool(
        "queryTabs",
        "Query open tabs to find a specific tab by title.",
        ["query"],
        query=("string", "The title to search for in open tabs."),
    ),
    _tool(
        "switchToTab",
        "Switch to a specific tab by its ID.",
        ["tabId"],
        tabId=("number", "The ID of the tab to switch to."),
    ),
    _tool("listTabs", "List all open tabs."),
    _tool(
        "historyNav",
        "Navigate forwards or backwards in the browser history.",
        ["action"],
        action=("string", "The history navigation action to perform. Can be 'back' or 'forward'."),
    ),
    _tool(
        "simulateKeyPress",
        "Simulate a key press event on a specific element.",
        ["selector", "key"],
        selector=("string", "CSS selector for the element to trigger the key press on."),
        key=("string", "The key to press (e.g., 'Enter', 'Escape')."),
    ),
]


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------
class BrowserBackend(ABC):
    """Something that can perform a named browser action."""

    @abstractmethod
    async def send(self, action: str, data: Optional[Dict[str, Any]] = None) -> Any:
        """Perform *action* with *data* and return the browser's response."""


class HttpBrowserBackend(BrowserBackend):
    """
    Talks to the extension bridge over HTTP.

    Each action is posted as ``{"type": action, "data": data}`` to ``<bridge_url>/action``.
    """

    def __init__(
        self, bridge_url: str, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self.bridge_url = bridge_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def send(self, action: str, data: Optional[Dict[str, Any]] = None) -> Any:
        payload = {"type": action, "data": data}
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            resp = await client.post(f"{self.bridge_url}/action", json=payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as exc:
            logger.error("Browser bridge request for '%s' failed: %s", action, exc)
            raise BrowserActionError(f"Browser bridge unavailable: {exc}") from exc
        finally:
            if self._client is None:
                await client.aclose()

        if isinstance(body, dict) and body.get("error"):
            raise BrowserActionError(str(body["error"]))
        return body


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------
def normalize_url(url: str) -> str:
    """Prefix ``https://`` unless *url* already has an http(s) scheme."""
    if url.startswith(("http://", "https://")):
        return url
    return f"https://{url}"


def browser_handlers(backend: BrowserBackend) -> Dict[str, ToolHandler]:
    """Return one async handler per entry of :data:`BROWSER_TOOLS`, bound to *backend*."""

    def forward(action: str) -> ToolHandler:
        async def handler(arguments: Dict[str, Any]) -> Any:
            return await backend.send(action, arguments or None)

        handler.__name__ = action
        return handler

    async def navigate_to_url(arguments: Dict[str, Any]) -> Any:
        url = normalize_url(str(arguments["url"]))
        return await backend.send("navigateToUrl", {"url": url})

    async def search_google(arguments: Dict[str, Any]) -> Any:
        url = f"https://www.google.com/search?q={quote(str(arguments['query']), safe='')}"
        return await backend.send("navigateToUrl", {"url": url})

    async def fill_input(arguments: Dict[str, Any]) -> Any:
        selector, value = arguments["selector"], str(arguments["value"])
        result = await backend.send("fillInput", {"selector": selector, "value": value})

        observed = await backend.send("getFieldValue", {"selector": selector})
        actual = observed.get("value") if isinstance(observed, dict) else observed
        if actual != value:
            raise BrowserActionError(
                f"Value of '{selector}' is {actual!r} after filling, expected {value!r}"
            )
        return result

    async def history_nav(arguments: Dict[str, Any]) -> Any:
        action = arguments.get("action")
        if action not in HISTORY_ACTIONS:
            raise BrowserActionError(f"Unsupported history action: {action!r}")
        return await backend.send("historyNav", {"action": action})

    handlers: Dict[str, ToolHandler] = {tool.name: forward(tool.name) for tool in BROWSER_TOOLS}
    handlers.update(
        navigateToUrl=navigate_to_url,
        searchGoogle=search_google,
        fillInput=fill_input,
        historyNav=history_nav,
    )
    return handlers


def register_browser_tools(registry: ToolRegistry, backend: BrowserBackend) -> ToolRegistry:
    """Install every browser tool on *registry*."""
    handlers = browser_handlers(backend)
    for tool in BROWSER_TOOLS:
        registry.add_tool(tool, handlers[tool.name])
    return registry
