"""Main orchestration loop for Superpowers."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import (
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Union,
)

from superpowers.agent.cancellation import CancellationToken
from superpowers.agent.llm_transport import (
    LLMTransport,
    TextStream,
    TransportCancelledError,
    load_transport,
)
from superpowers.agent.prompts import (
    DEFAULT_SYSTEM_PROMPT,
    SUPERPOWERS_SYSTEM_PROMPT,
    build_system_prompt,
)
from superpowers.agent.site_context import SiteContextFetcher
from superpowers.agent.tool_executor import execute_tool_calls
from superpowers.config import Settings
from superpowers.core.schema import (
    AgentMessage,
    AgentProgress,
    AgentResponse,
    LLMMessage,
    LLMOptions,
    PageContext,
    Tool,
    ToolCall,
    ToolResult,
)
from superpowers.tools import (
    ToolHandler,
    ToolRegistry,
)
from superpowers.tools.browser import (
    BrowserBackend,
    HttpBrowserBackend,
    register_browser_tools,
)
from superpowers.tools.tool_call_parser import StreamingToolParser

logger = logging.getLogger(__name__)

STOPPED_MESSAGE = "Operation stopped by user."

ProgressCallback = Callable[[AgentProgress], Union[None, Awaitable[None]]]


class _RunStopped(Exception):
    """Internal signal: the current run was cancelled."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def to_llm_messages(messages: Sequence[AgentMessage]) -> List[LLMMessage]:
    """Convert agent history into transport-level messages."""
    converted: List[LLMMessage] = []
    for msg in messages:
        images = None
        if msg.attachments:
            images = [att.data for att in msg.attachments if att.type == "image"]
        converted.append(
            LLMMessage(
                role=msg.role,
                content=msg.content,
                images=images,
                tool_calls=list(msg.tool_calls) if msg.tool_calls else None,
                tool_call_id=msg.tool_call_id if msg.role == "tool" else None,
            )
        )
    return converted


def tool_message_content(result: ToolResult) -> str:
    """Text the model sees for a tool result."""
    if result.error:
        return f'Tool "{result.name}" failed: {result.error}'
    return json.dumps(result.result, default=str)


async def _notify(callback: Optional[ProgressCallback], progress: AgentProgress) -> None:
    if callback is None:
        return
    outcome = callback(progress)
    if inspect.isawaitable(outcome):
        await outcome


async def _next_chunk(stream: TextStream, token: CancellationToken) -> str:
    """Read one fragment, giving up as soon as *token* is cancelled."""
    if token.cancelled:
        raise _RunStopped
    read = asyncio.ensure_future(stream.__anext__())
    stop = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        if not read.done():
            read.cancel()
            await asyncio.wait({read})

    if token.cancelled:
        if not read.cancelled():
            read.exception()  # retrieved so asyncio does not report it
        raise _RunStopped
    return read.result()


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------
class Agent:
    """
    Drives a multi-turn conversation in which the model may call tools.

    Every :meth:`run` streams a model turn, executes the tool calls found in it, feeds the results
    back and repeats until the model answers without tools, the iteration budget is used up or
    :meth:`stop` is called.

    Args:
        transport: Where model turns come from.  When omitted, the transport is picked per run
            from ``options.provider`` and cached.
        transports: Preloaded transports keyed by provider name.
        system_prompt: Persona text; the tool catalogue is appended per run.
        max_iterations: Upper bound on model turns per run.
        tools: Initial tool declarations.
        tool_handlers: Handlers keyed by tool name.
        registry: Use an existing registry instead of *tools* / *tool_handlers*.
        site_context: Optional ``llms.txt`` fetcher used when a page context is given.
    """

    def __init__(
        self,
        transport: LLMTransport | None = None,
        system_prompt: str | None = None,
        max_iterations: int = 10,
        tools: Iterable[Tool] | None = None,
        tool_handlers: Mapping[str, ToolHandler] | None = None,
        registry: ToolRegistry | None = None,
        site_context: SiteContextFetcher | None = None,
        transports: Mapping[str, LLMTransport] | None = None,
    ) -> None:
        self.transport = transport
        self.transports: Dict[str, LLMTransport] = {
            name.lower(): t for name, t in (transports or {}).items()
        }
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.max_iterations = max_iterations
        self.registry = registry if registry is not None else ToolRegistry(tools, tool_handlers)
        self.site_context = site_context
        self._active: Set[CancellationToken] = set()

    def add_tool(self, tool: Tool, handler: ToolHandler) -> None:
        self.registry.add_tool(tool, handler)

    def transport_for(self, provider: str) -> LLMTransport:
        """Transport for *provider*; a fixed transport given at construction always wins."""
        if self.transport is not None:
            return self.transport
        name = provider.lower()
        if name not in self.transports:
            self.transports[name] = load_transport(name)
        return self.transports[name]

    @property
    def is_running(self) -> bool:
        return bool(self._active)

    async def build_system_prompt(self, context: PageContext | None = None) -> str:
        """Effective system prompt for a run with the given page *context*."""
        site_notes = None
        if context is not None and context.url and self.site_context is not None:
            site_notes = await self.site_context.fetch(context.url)
        return build_system_prompt(
            self.system_prompt, self.registry.catalogue(), context=context, site_notes=site_notes
        )

    def stop(self) -> None:
        """Cancel every run in flight on this agent.  Does nothing when idle."""
        for token in list(self._active):
            token.cancel()

    async def run(
        self,
        history: Sequence[AgentMessage],
        llm_options: LLMOptions,
        on_progress: ProgressCallback | None = None,
        context: PageContext | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AgentResponse:
        """
        Run one user-initiated exchange to completion.

        *history* is not modified.  Transport failures propagate; tool failures are reported back
        to the model.  A cancelled run resolves normally with ``finished=True``.
        """
        token = cancel_token or CancellationToken()
        self._active.add(token)
        try:
            return await self._run(history, llm_options, on_progress, context, token)
        finally:
            self._active.discard(token)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    async def _run(
        self,
        history: Sequence[AgentMessage],
        llm_options: LLMOptions,
        on_progress: ProgressCallback | None,
        context: PageContext | None,
        token: CancellationToken,
    ) -> AgentResponse:
        messages = list(history)
        options = llm_options.model_copy(
            update={"system_prompt": await self.build_system_prompt(context)}
        )
        parser = StreamingToolParser()

        iterations = 0
        last_response = ""
        all_calls: List[ToolCall] = []
        all_results: List[ToolResult] = []

        def stopped() -> AgentResponse:
            logger.info("Run stopped by user after %d iteration(s)", iterations)
            return AgentResponse(
                message=STOPPED_MESSAGE,
                tool_calls=list(all_calls),
                tool_results=list(all_results),
                iterations=iterations,
                finished=True,
            )

        async def still_running(_call: ToolCall) -> bool:
            return not token.cancelled

        while iterations < self.max_iterations:
            if token.cancelled:
                return stopped()
            iterations += 1
            parser.reset()
            logger.debug("Iteration %d/%d", iterations, self.max_iterations)

            try:
                response = await self._stream_turn(
                    messages, options, parser, token, on_progress, iterations
                )
            except _RunStopped:
                return stopped()
            last_response = response

            final = parser.finalize()
            if not final.tool_calls:
                return AgentResponse(
                    message=final.display_message or "",
                    tool_calls=list(all_calls),
                    tool_results=list(all_results),
                    iterations=iterations,
                    finished=True,
                )

            logger.info(
                "Model requested %d tool call(s): %s",
                len(final.tool_calls),
                [call.name for call in final.tool_calls],
            )
            results = await execute_tool_calls(self.registry, final.tool_calls, still_running)
            all_calls.extend(final.tool_calls[: len(results)])
            for result in results:
                parser.add_tool_result(result.name, result.result, result.error)
            all_results.extend(results)
            if token.cancelled:
                return stopped()

            messages.append(
                AgentMessage(role="assistant", content=response, tool_calls=final.tool_calls)
            )
            for result in results:
                messages.append(
                    AgentMessage(
                        role="tool", tool_call_id=result.id, content=tool_message_content(result)
                    )
                )

            await _notify(
                on_progress,
                AgentProgress(
                    message=response,
                    tool_calls=list(all_calls),
                    tool_results=list(all_results),
                    planner_steps=parser.planner_steps,
                    iterations=iterations,
                    finished=False,
                ),
            )

        logger.warning("Reached the iteration limit (%d)", self.max_iterations)
        return AgentResponse(
            message=last_response,
            tool_calls=list(all_calls),
            tool_results=list(all_results),
            iterations=iterations,
            finished=False,
        )

    async def _stream_turn(
        self,
        messages: List[AgentMessage],
        options: LLMOptions,
        parser: StreamingToolParser,
        token: CancellationToken,
        on_progress: ProgressCallback | None,
        iterations: int,
    ) -> str:
        """Stream one model turn through *parser* and return the raw text."""
        stream = self.transport_for(options.provider).generate(to_llm_messages(messages), options)
        token.register(stream.cancel)
        exhausted = False
        try:
            while True:
                try:
                    chunk = await _next_chunk(stream, token)
                except StopAsyncIteration:
                    exhausted = True
                    break
                except TransportCancelledError as exc:
                    raise _RunStopped from exc

                parser.parse(chunk)
                await _notify(
                    on_progress,
                    AgentProgress(
                        message=parser.buffer,
                        chunk=chunk,
                        planner_steps=parser.planner_steps,
                        iterations=iterations,
                        finished=False,
                    ),
                )
        finally:
            # Fires only if the token has not already cancelled the stream.
            if token.unregister(stream.cancel) and not exhausted:
                stream.cancel()
            await stream.aclose()

        return parser.buffer


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------
def create_agent(
    config: Settings,
    transport: LLMTransport | None = None,
    backend: BrowserBackend | None = None,
) -> Agent:
    """
    Build the default browsing agent.

    Without *transport*, each run uses the transport named by its ``LLMOptions.provider``.  Without
    *backend*, browser actions go to the HTTP bridge at ``config.BROWSER_BRIDGE_URL``.
    """
    backend = backend or HttpBrowserBackend(config.BROWSER_BRIDGE_URL, timeout=config.HTTP_TIMEOUT)
    registry = register_browser_tools(ToolRegistry(), backend)
    return Agent(
        transport,
        system_prompt=SUPERPOWERS_SYSTEM_PROMPT,
        max_iterations=config.MAX_ITERATIONS,
        registry=registry,
        site_context=SiteContextFetcher() if config.FETCH_SITE_CONTEXT else None,
    )
