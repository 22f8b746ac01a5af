"""Tests for the browser tool catalogue and handlers."""

import httpx
import pytest
from conftest import FakeBrowser

from superpowers.agent.tool_executor import execute_tool
from superpowers.core.schema import ToolCall
from superpowers.tools import ToolRegistry
from superpowers.tools.browser import (
    BROWSER_TOOLS,
    BrowserActionError,
    HttpBrowserBackend,
    browser_handlers,
    normalize_url,
    register_browser_tools,
)

EXPECTED_TOOLS = [
    "getCurrentTab",
    "clickElement",
    "fillInput",
    "navigateToUrl",
    "searchGoogle",
    "getPageContent",
    "scrollToElement",
    "queryTabs",
    "switchToTab",
    "listTabs",
    "historyNav",
    "simulateKeyPress",
]


def test_catalogue_names() -> None:
    assert [tool.name for tool in BROWSER_TOOLS] == EXPECTED_TOOLS


def test_register_browser_tools(fake_browser: FakeBrowser) -> None:
    registry = register_browser_tools(ToolRegistry(), fake_browser)

    assert len(registry) == len(EXPECTED_TOOLS)
    assert all(name in registry for name in EXPECTED_TOOLS)
    assert registry.get_tool("fillInput").parameters.required == ["selector", "value"]


@pytest.mark.parametrize(
    "url, expected",
    [
        ("example.com", "https://example.com"),
        ("http://example.com", "http://example.com"),
        ("https://example.com/a?b=c", "https://example.com/a?b=c"),
    ],
)
def test_normalize_url(url: str, expected: str) -> None:
    assert normalize_url(url) == expected


@pytest.mark.asyncio
async def test_navigate_adds_scheme(fake_browser: FakeBrowser) -> None:
    handlers = browser_handlers(fake_browser)
    await handlers["navigateToUrl"]({"url": "example.com/docs"})

    assert fake_browser.actions == [("navigateToUrl", {"url": "https://example.com/docs"})]


@pytest.mark.asyncio
async def test_search_google_quotes_query(fake_browser: FakeBrowser) -> None:
    handlers = browser_handlers(fake_browser)
    await handlers["searchGoogle"]({"query": "cats & dogs"})

    assert fake_browser.actions == [
        ("navigateToUrl", {"url": "https://www.google.com/search?q=cats%20%26%20dogs"})
    ]


@pytest.mark.asyncio
async def test_fill_input_reads_back_value(fake_browser: FakeBrowser) -> None:
    handlers = browser_handlers(fake_browser)
    await handlers["fillInput"]({"selector": "#q", "value": "hello"})

    assert [action for action, _ in fake_browser.actions] == ["fillInput", "getFieldValue"]


@pytest.mark.asyncio
async def test_fill_input_mismatch_raises() -> None:
    browser = FakeBrowser({"getFieldValue": {"value": "something else"}})
    handlers = browser_handlers(browser)

    with pytest.raises(BrowserActionError, match="expected 'hello'"):
        await handlers["fillInput"]({"selector": "#q", "value": "hello"})


@pytest.mark.asyncio
async def test_history_nav_rejects_unknown_action(fake_browser: FakeBrowser) -> None:
    handlers = browser_handlers(fake_browser)

    with pytest.raises(BrowserActionError):
        await handlers["historyNav"]({"action": "sideways"})
    assert fake_browser.actions == []

    await handlers["historyNav"]({"action": "back"})
    assert fake_browser.actions == [("historyNav", {"action": "back"})]


@pytest.mark.asyncio
async def test_simple_actions_forward_arguments(fake_browser: FakeBrowser) -> None:
    handlers = browser_handlers(fake_browser)
    await handlers["listTabs"]({})
    await handlers["clickElement"]({"selector": "button.buy"})

    assert fake_browser.actions == [
        ("listTabs", None),
        ("clickElement", {"selector": "button.buy"}),
    ]


@pytest.mark.asyncio
async def test_backend_error_becomes_tool_error() -> None:
    browser = FakeBrowser({"clickElement": BrowserActionError("Element not found: #x")})
    registry = register_browser_tools(ToolRegistry(), browser)

    result = await execute_tool(
        registry, ToolCall(name="clickElement", arguments={"selector": "#x"})
    )
    assert result.error == "Element not found: #x"


@pytest.mark.asyncio
async def test_http_backend_posts_action() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, request.content))
        return httpx.Response(200, json={"id": 3, "title": "Docs"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        backend = HttpBrowserBackend("http://bridge.local/", client=client)
        result = await backend.send("getCurrentTab")

    assert result == {"id": 3, "title": "Docs"}
    assert seen[0][0] == "/action"
    assert b'"type":"getCurrentTab"' in seen[0][1].replace(b" ", b"")


@pytest.mark.asyncio
async def test_http_backend_error_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": "No active tab found"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        backend = HttpBrowserBackend("http://bridge.local", client=client)
        with pytest.raises(BrowserActionError, match="No active tab found"):
            await backend.send("getCurrentTab")
