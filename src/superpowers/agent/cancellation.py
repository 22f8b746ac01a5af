"""Cooperative cancellation for agent runs."""

import asyncio
import logging
from typing import (
    Callable,
    List,
)

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    One-shot cancellation flag shared between a run and whoever may stop it.

    Callbacks registered with :meth:`register` fire exactly once, when :meth:`cancel` is first
    called (or immediately, if the token is already cancelled).
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Cancellation callback %r failed", callback)

    def register(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def unregister(self, callback: Callable[[], None]) -> bool:
        """Remove *callback*; returns *True* if it was still pending."""
        try:
            self._callbacks.remove(callback)
        except ValueError:
            return False
        return True

    async def wait(self) -> None:
        await self._event.wait()
