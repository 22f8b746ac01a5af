"""
LLM transport interface for Superpowers.

This module is the only place that *directly* calls an LLM.  Everything else (agent loop, parser,
tools) stays model-agnostic and only sees a :class:`TextStream` of text fragments.

We support three back-ends out of the box:

1. **OpenAI** (or any OpenAI-compatible endpoint) via the ``openai`` SDK.
2. **Ollama** via its native ``/api/chat`` streaming endpoint (httpx).
3. **Anthropic** via the ``anthropic`` SDK.

Additional providers can be added by subclassing :class:`LLMTransport` and registering via
:func:`register_transport`.
"""

import asyncio
import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Type,
)

import httpx

from superpowers.config import (
    ConfigError,
    settings,
)
from superpowers.core.schema import (
    LLMMessage,
    LLMOptions,
)

logger = logging.getLogger(__name__)


class ProviderApiError(RuntimeError):
    """Raised when a provider request fails."""


class TransportCancelledError(ProviderApiError):
    """Raised by a stream whose request was cancelled."""


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------
class TextStream(ABC):
    """Async iterator of text fragments that can be cancelled from outside."""

    def __aiter__(self) -> "TextStream":
        return self

    @abstractmethod
    async def __anext__(self) -> str:
        """Return the next fragment or raise :class:`StopAsyncIteration`."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop the underlying request.  Calling it more than once has no further effect."""

    async def aclose(self) -> None:
        """Release resources once the consumer is done with the stream."""


class AsyncGeneratorStream(TextStream):
    """Adapts an async generator of text into a cancellable :class:`TextStream`."""

    def __init__(self, agen: AsyncIterator[str]) -> None:
        self._agen = agen
        self._step: Optional["asyncio.Future[str]"] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def __anext__(self) -> str:
        if self._cancelled:
            raise TransportCancelledError("Request was cancelled")
        self._step = asyncio.ensure_future(self._agen.__anext__())
        try:
            return await self._step
        except asyncio.CancelledError:
            if self._cancelled:
                raise TransportCancelledError("Request was cancelled") from None
            raise
        finally:
            self._step = None

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._step is not None and not self._step.done():
            # Throws CancelledError into the generator, which closes its HTTP response.
            self._step.cancel()

    async def aclose(self) -> None:
        aclose = getattr(self._agen, "aclose", None)
        if aclose is not None and (self._step is None or self._step.done()):
            await aclose()


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_TRANSPORT_REGISTRY: dict[str, Type["LLMTransport"]] = {}


def register_transport(name: str) -> Callable:
    """Decorator to register a transport class under *name*."""

    def wrapper(cls: Type["LLMTransport"]) -> Type["LLMTransport"]:
        _TRANSPORT_REGISTRY[name] = cls
        return cls

    return wrapper


def available_transports() -> List[str]:
    return sorted(_TRANSPORT_REGISTRY)


def load_transport(name: str | None = None) -> "LLMTransport":
    """
    Factory that returns an instantiated transport.

    Fallback order:
    1. *name* arg
    2. ``settings.PROVIDER`` env option
    """

    target = name or settings.PROVIDER
    cls = _TRANSPORT_REGISTRY.get(target.lower())
    if cls is None:
        raise ConfigError(f"Transport '{target}' is not registered.")
    return cls()


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class LLMTransport(ABC):
    """Turns a message list into a stream of text fragments."""

    def generate(self, messages: Sequence[LLMMessage], options: LLMOptions) -> TextStream:
        """Start a streaming completion.  The request is sent when the stream is first read."""
        return AsyncGeneratorStream(self._stream(list(messages), options))

    @abstractmethod
    def _stream(self, messages: List[LLMMessage], options: LLMOptions) -> AsyncIterator[str]:
        """Async generator yielding text fragments for one completion."""

    @staticmethod
    def _system_prompt(messages: List[LLMMessage], options: LLMOptions) -> str | None:
        if options.system_prompt:
            return options.system_prompt
        system = [m.content for m in messages if m.role == "system"]
        return "\n\n".join(system) if system else None


# ---------------------------------------------------------------------------
# Concrete transports
# ---------------------------------------------------------------------------
@register_transport("openai")
class OpenAITransport(LLMTransport):
    """OpenAI chat-completions streaming (also serves OpenAI-compatible local servers)."""

    def _to_openai(self, messages: List[LLMMessage], options: LLMOptions) -> List[Dict[str, Any]]:
        converted: List[Dict[str, Any]] = []
        system_prompt = self._system_prompt(messages, options)
        if system_prompt:
            converted.append({"role": "system", "content": system_prompt})

        for msg in messages:
            if msg.role == "system":
                continue
            if msg.role == "tool":
                # Tool calls travel inside the assistant text, so results go back as user turns.
                converted.append({"role": "user", "content": f"[tool result]\n{msg.content}"})
            elif msg.role == "user" and msg.images:
                parts: List[Dict[str, Any]] = [{"type": "text", "text": msg.content}]
                parts.extend(
                    {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{img}"}}
                    for img in msg.images
                )
                converted.append({"role": "user", "content": parts})
            else:
                converted.append({"role": msg.role, "content": msg.content})
        return converted

    async def _stream(self, messages: List[LLMMessage], options: LLMOptions) -> AsyncIterator[str]:
        import openai  # pylint: disable=import-outside-toplevel

        client = openai.AsyncOpenAI(
            api_key=options.api_key or settings.OPENAI_API_KEY,
            base_url=options.custom_url or settings.OPENAI_BASE_URL,
            timeout=settings.HTTP_TIMEOUT,
        )
        kwargs: Dict[str, Any] = {
            "model": options.model,
            "messages": self._to_openai(messages, options),
            "stream": True,
            "temperature": options.temperature if options.temperature is not None else 0.7,
        }
        if options.max_tokens:
            kwargs["max_tokens"] = options.max_tokens
        if options.top_p is not None:
            kwargs["top_p"] = options.top_p

        try:
            stream = await client.chat.completions.create(**kwargs)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except openai.APIError as exc:
            logger.error("OpenAI transport error: %s", exc)
            raise ProviderApiError(str(exc)) from exc
        finally:
            await client.close()


@register_transport("ollama")
class OllamaTransport(LLMTransport):
    """Ollama native chat endpoint, streamed as newline-delimited JSON."""

    def _to_ollama(self, messages: List[LLMMessage], options: LLMOptions) -> List[Dict[str, Any]]:
        converted: List[Dict[str, Any]] = []
        system_prompt = self._system_prompt(messages, options)
        if system_prompt:
            converted.append({"role": "system", "content": system_prompt})
        for msg in messages:
            if msg.role == "system":
                continue
            entry: Dict[str, Any] = {"role": msg.role, "content": msg.content}
            if msg.images:
                entry["images"] = msg.images
            converted.append(entry)
        return converted

    async def _stream(self, messages: List[LLMMessage], options: LLMOptions) -> AsyncIterator[str]:
        base_url = (options.custom_url or settings.OLLAMA_URL).rstrip("/")
        sampling: Dict[str, Any] = {}
        if options.temperature is not None:
            sampling["temperature"] = options.temperature
        if options.top_p is not None:
            sampling["top_p"] = options.top_p
        if options.max_tokens:
            sampling["num_predict"] = options.max_tokens

        payload = {
            "model": options.model,
            "messages": self._to_ollama(messages, options),
            "stream": True,
            "options": sampling,
        }

        try:
            async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT) as client:
                async with client.stream("POST", f"{base_url}/api/chat", json=payload) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError as exc:
                            raise ProviderApiError(
                                f"Malformed response line from Ollama: {line[:200]!r}"
                            ) from exc
                        if data.get("error"):
                            raise ProviderApiError(data["error"])
                        content = data.get("message", {}).get("content")
                        if content:
                            yield content
                        if data.get("done"):
                            break
        except httpx.ConnectError as exc:
            raise ProviderApiError(
                f"Failed to connect to Ollama at {base_url}. Make sure Ollama is running."
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Ollama request error: %s", exc)
            raise ProviderApiError(str(exc)) from exc


@register_transport("anthropic")
class AnthropicTransport(LLMTransport):
    """Anthropic Claude messages streaming."""

    def _to_anthropic(self, messages: List[LLMMessage]) -> List[Dict[str, Any]]:
        converted: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == "system":
                continue
            role = "assistant" if msg.role == "assistant" else "user"
            content = msg.content if msg.role != "tool" else f"[tool result]\n{msg.content}"
            if msg.images and role == "user":
                blocks: List[Dict[str, Any]] = [
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": "image/png", "data": img},
                    }
                    for img in msg.images
                ]
                blocks.append({"type": "text", "text": content})
                converted.append({"role": role, "content": blocks})
            elif converted and converted[-1]["role"] == role and isinstance(
                converted[-1]["content"], str
            ):
                # The API rejects consecutive turns with the same role.
                converted[-1]["content"] += f"\n\n{content}"
            else:
                converted.append({"role": role, "content": content})
        return converted

    async def _stream(self, messages: List[LLMMessage], options: LLMOptions) -> AsyncIterator[str]:
        import anthropic  # pylint: disable=import-outside-toplevel

        client = anthropic.AsyncAnthropic(
            api_key=options.api_key or settings.ANTHROPIC_API_KEY,
            timeout=settings.HTTP_TIMEOUT,
        )
        kwargs: Dict[str, Any] = {
            "model": options.model,
            "max_tokens": options.max_tokens or settings.MAX_TOKENS,
            "messages": self._to_anthropic(messages),
        }
        system_prompt = self._system_prompt(messages, options)
        if system_prompt:
            kwargs["system"] = system_prompt
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.top_p is not None:
            kwargs["top_p"] = options.top_p

        try:
            async with client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
        except anthropic.APIError as exc:
            logger.error("Anthropic transport error: %s", exc)
            raise ProviderApiError(str(exc)) from exc
        finally:
            await client.close()
