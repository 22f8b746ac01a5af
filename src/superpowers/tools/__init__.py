"""
Tool registry for Superpowers.

This module holds the catalogue of tools the agent advertises to the model and the async handlers
it dispatches to.  Handlers are coroutine functions that receive the call's argument mapping and
return any JSON-serialisable value.
"""

import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
)

from superpowers.core.schema import Tool

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]
"""Signature of a tool handler: ``async def handler(arguments) -> result``."""


class ToolRegistry:
    """
    Name-keyed mapping of tool declarations and handlers.

    Registering a name twice is allowed: the last registration replaces both the catalogue entry
    and the handler.
    """

    def __init__(
        self,
        tools: Iterable[Tool] | None = None,
        handlers: Mapping[str, ToolHandler] | None = None,
    ) -> None:
        self._tools: Dict[str, Tool] = {}
        self._handlers: Dict[str, ToolHandler] = {}
        for tool in tools or []:
            self._tools[tool.name] = tool
        self._handlers.update(handlers or {})

    def add_tool(self, tool: Tool, handler: ToolHandler) -> None:
        """
        Register *tool* and install *handler* for it.

        Parameters
        ----------
        tool: Tool
            The declaration advertised to the model.
        handler: ToolHandler
            Coroutine function invoked with the call's arguments.
        """
        if tool.name in self._tools or tool.name in self._handlers:
            logger.warning("Tool '%s' is already registered; replacing it", tool.name)
        else:
            logger.debug("Registering tool '%s'", tool.name)
        self._tools[tool.name] = tool
        self._handlers[tool.name] = handler

    def register(self, tool: Tool) -> Callable[[ToolHandler], ToolHandler]:
        """
        Decorator form of :meth:`add_tool`::

            @registry.register(Tool(name="echo", description="Echo text"))
            async def echo(arguments):
                return arguments["text"]
        """

        def wrapper(fn: ToolHandler) -> ToolHandler:
            self.add_tool(tool, fn)
            return fn

        return wrapper

    def get_handler(self, name: str) -> Optional[ToolHandler]:
        return self._handlers.get(name)

    def get_tool(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    @property
    def tools(self) -> List[Tool]:
        """Registered declarations in registration order."""
        return list(self._tools.values())

    def catalogue(self) -> List[Dict[str, Any]]:
        """JSON-ready tool definitions for the system prompt."""
        return [tool.model_dump(mode="json") for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[Tool]:
        return iter(self.tools)
