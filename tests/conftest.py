"""Shared fixtures: a scripted LLM transport and an in-memory browser backend."""

import asyncio
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

import pytest

from superpowers.agent.llm_transport import (
    LLMTransport,
    TextStream,
    TransportCancelledError,
)
from superpowers.core.schema import (
    LLMMessage,
    LLMOptions,
)
from superpowers.tools.browser import BrowserBackend


class ScriptedStream(TextStream):
    """Yields preset chunks; optionally hangs afterwards until cancelled."""

    def __init__(
        self, chunks: Sequence[str], hang: bool = False, error: Optional[Exception] = None
    ) -> None:
        self.chunks = list(chunks)
        self.hang = hang
        self.error = error
        self.cancel_count = 0
        self.closed = False
        self.waiting = asyncio.Event()
        self._index = 0
        self._cancelled = asyncio.Event()

    async def __anext__(self) -> str:
        if self._index < len(self.chunks):
            chunk = self.chunks[self._index]
            self._index += 1
            return chunk
        if self.error is not None:
            raise self.error
        if self.hang:
            self.waiting.set()
            await self._cancelled.wait()
            raise TransportCancelledError("Request was cancelled")
        raise StopAsyncIteration

    def cancel(self) -> None:
        self.cancel_count += 1
        self._cancelled.set()

    async def aclose(self) -> None:
        self.closed = True


class ScriptedTransport(LLMTransport):
    """Hands out one scripted stream per model turn and records what it was asked."""

    def __init__(self, *turns: Any) -> None:
        self.streams: List[ScriptedStream] = [
            turn if isinstance(turn, ScriptedStream) else ScriptedStream(turn) for turn in turns
        ]
        self.calls: List[Tuple[List[LLMMessage], LLMOptions]] = []

    def generate(self, messages: Sequence[LLMMessage], options: LLMOptions) -> TextStream:
        index = len(self.calls)
        self.calls.append((list(messages), options))
        if index >= len(self.streams):
            raise AssertionError(f"unexpected model turn #{index + 1}")
        return self.streams[index]

    def _stream(self, messages, options):  # pragma: no cover - generate() is overridden
        raise NotImplementedError


class FakeBrowser(BrowserBackend):
    """Records actions and answers from a canned response table."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None) -> None:
        self.responses = dict(responses or {})
        self.actions: List[Tuple[str, Optional[Dict[str, Any]]]] = []
        self.fields: Dict[str, str] = {}

    async def send(self, action: str, data: Optional[Dict[str, Any]] = None) -> Any:
        self.actions.append((action, data))
        if action == "fillInput":
            self.fields[data["selector"]] = data["value"]
        if action == "getFieldValue" and action not in self.responses:
            return {"value": self.fields.get(data["selector"], "")}
        response = self.responses.get(action, {"ok": True})
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def llm_options() -> LLMOptions:
    return LLMOptions(provider="ollama", model="test-model")


@pytest.fixture
def fake_browser() -> FakeBrowser:
    return FakeBrowser()
