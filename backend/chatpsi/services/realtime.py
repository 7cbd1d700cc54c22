"""In-process realtime notifier for newly inserted messages.

Subscribers register per thread and are called with every committed
``MessageOut`` for that thread. Callbacks may be plain functions or
coroutines; coroutine callbacks run in the background so a slow subscriber
never delays the writer. A callback that raises is dropped and told ``error``.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from ..schemas import MessageOut

logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    SUBSCRIBED = "subscribed"
    ERROR = "error"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"


InsertCallback = Callable[[MessageOut], Union[None, Awaitable[None]]]
StatusCallback = Callable[[SubscriptionStatus], None]


@dataclass(eq=False)
class Subscription:
    """Handle returned by :meth:`RealtimeNotifier.subscribe`."""

    id: int
    thread_id: str
    on_insert: InsertCallback
    on_status: Optional[StatusCallback] = None
    active: bool = field(default=True)
    pending: Optional["asyncio.Future[None]"] = field(default=None, repr=False)

    def report(self, status: SubscriptionStatus) -> None:
        if self.on_status is None:
            return
        try:
            self.on_status(status)
        except Exception:  # noqa: BLE001
            logger.exception("Status callback failed for subscription %s", self.id)


class RealtimeNotifier:
    """Fans out message inserts to the subscribers of each thread."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, dict[int, Subscription]] = {}
        self._ids = itertools.count(1)

    def subscribe(
        self,
        thread_id: str,
        on_insert: InsertCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription:
        handle = Subscription(id=next(self._ids), thread_id=thread_id, on_insert=on_insert, on_status=on_status)
        self._subscriptions.setdefault(thread_id, {})[handle.id] = handle
        logger.debug("Subscription %s opened for thread %s", handle.id, thread_id)
        handle.report(SubscriptionStatus.SUBSCRIBED)
        return handle

    def unsubscribe(self, handle: Subscription) -> None:
        if not handle.active:
            return
        handle.active = False
        thread_subs = self._subscriptions.get(handle.thread_id)
        if thread_subs is not None:
            thread_subs.pop(handle.id, None)
            if not thread_subs:
                del self._subscriptions[handle.thread_id]
        logger.debug("Subscription %s closed", handle.id)
        handle.report(SubscriptionStatus.CLOSED)

    def subscriber_count(self, thread_id: Optional[str] = None) -> int:
        if thread_id is not None:
            return len(self._subscriptions.get(thread_id, {}))
        return sum(len(subs) for subs in self._subscriptions.values())

    async def publish(self, message: MessageOut) -> None:
        """Hand ``message`` to every subscriber of its thread.

        Plain callbacks run inline. Coroutine callbacks are scheduled in the
        background, chained per subscription so each subscriber still sees
        inserts in commit order, and a slow one never holds up the caller.
        """

        for handle in list(self._subscriptions.get(message.thread_id, {}).values()):
            if not handle.active:
                continue
            try:
                result = handle.on_insert(message)
            except Exception:  # noqa: BLE001
                self._drop(handle)
                continue
            if inspect.isawaitable(result):
                handle.pending = asyncio.ensure_future(self._deliver(handle, handle.pending, result))

    async def _deliver(
        self,
        handle: Subscription,
        previous: Optional[asyncio.Future[None]],
        result: Awaitable[None],
    ) -> None:
        if previous is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await previous
        if not handle.active:
            if inspect.iscoroutine(result):
                result.close()
            return
        try:
            await result
        except Exception:  # noqa: BLE001
            self._drop(handle)

    async def flush(self) -> None:
        """Wait until every scheduled delivery has finished."""

        pending = [
            handle.pending
            for thread_subs in self._subscriptions.values()
            for handle in thread_subs.values()
            if handle.pending is not None
        ]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _drop(self, handle: Subscription) -> None:
        if not handle.active:
            return
        logger.exception("Dropping subscription %s after delivery failure", handle.id)
        handle.active = False
        self._subscriptions.get(handle.thread_id, {}).pop(handle.id, None)
        handle.report(SubscriptionStatus.ERROR)

    def close_all(self) -> None:
        for thread_subs in list(self._subscriptions.values()):
            for handle in list(thread_subs.values()):
                self.unsubscribe(handle)


_notifier: RealtimeNotifier | None = None


def get_notifier() -> RealtimeNotifier:
    global _notifier
    if _notifier is None:
        _notifier = RealtimeNotifier()
    return _notifier


def shutdown_notifier() -> None:
    global _notifier
    if _notifier is not None:
        _notifier.close_all()
        _notifier = None
