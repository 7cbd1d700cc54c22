"""Cancellable single-shot timers for the chat session state machine."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class TimerSlot:
    """Holds at most one pending ``call_later`` handle.

    Scheduling replaces (and cancels) whatever was pending. Each schedule gets
    a token; a firing whose token is no longer current is ignored, so a
    callback that was already queued by the loop when it got cancelled can
    never act on newer state.
    """

    def __init__(self, name: str, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.name = name
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._token = 0

    @property
    def active(self) -> bool:
        return self._handle is not None

    def schedule(self, delay: float, callback: Callable[..., Any], *args: Any) -> None:
        self.cancel()
        loop = self._loop or asyncio.get_running_loop()
        token = self._token
        self._handle = loop.call_later(delay, self._fire, token, callback, args)

    def cancel(self) -> None:
        self._token += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, token: int, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        if token != self._token:
            logger.debug("Ignoring stale %s timer", self.name)
            return
        self._handle = None
        self._token += 1
        callback(*args)
