"""Client-side chat session: optimistic send and realtime reconciliation.

One :class:`ChatSession` drives one open conversation view. It owns the
realtime channel and every timer it starts; leaving the ``async with`` block
(or calling :meth:`ChatSession.close`) releases all of them.

Reconciliation rules for an incoming stored row:

* a row whose id is already displayed is ignored;
* a user row replaces the local placeholder carrying the same ``client_id``,
  or, for rows without one, the oldest non-failed placeholder with the same
  kind and content;
* anything else is inserted; the list is then re-sorted by ``created_at``
  with ties kept in arrival order.
"""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
from enum import Enum
from typing import Any, Coroutine, Iterable, NoReturn, Optional, Protocol, Sequence
from uuid import uuid4

from pydantic import ValidationError

from ..config import ChatSettings, get_settings
from ..errors import (
    ChatError,
    ConnectionLost,
    EntitlementRequired,
    InvalidRequest,
    ReplyOutstanding,
    UpstreamDispatchFailed,
)
from ..schemas import (
    Attachment,
    DeliveryStatus,
    MessageKind,
    MessageOut,
    Sender,
    build_dispatch_request,
)
from ..services.realtime import SubscriptionStatus
from ..utils import utcnow
from .timers import TimerSlot
from .transport import ChannelHandle, ChatBackend, RealtimeTransport

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


class ChatMessage(MessageOut):
    """A displayed message: a stored row, or a local placeholder (``local=True``)."""

    status: DeliveryStatus = DeliveryStatus.SENT
    local: bool = False


class ChatView(Protocol):
    def render(self, messages: Sequence[ChatMessage], *, typing: bool) -> None: ...

    def is_near_bottom(self) -> bool: ...

    def scroll_to_bottom(self) -> None: ...

    def show_new_messages_hint(self) -> None: ...

    def notify(self, level: str, message: str) -> None: ...


class NullView:
    """View that renders nothing; used when the session runs headless."""

    def render(self, messages: Sequence[ChatMessage], *, typing: bool) -> None:
        return None

    def is_near_bottom(self) -> bool:
        return True

    def scroll_to_bottom(self) -> None:
        return None

    def show_new_messages_hint(self) -> None:
        return None

    def notify(self, level: str, message: str) -> None:
        logger.info("[%s] %s", level, message)


class ChatSession:
    def __init__(
        self,
        backend: ChatBackend,
        transport: RealtimeTransport,
        view: Optional[ChatView] = None,
        settings: Optional[ChatSettings] = None,
    ) -> None:
        self._backend = backend
        self._transport = transport
        self._view: ChatView = view or NullView()
        self._settings = settings or get_settings().chat

        self._messages: list[ChatMessage] = []
        self._arrival: dict[str, int] = {}
        self._arrivals = itertools.count()
        # client_ids whose dispatch failed; the marker survives re-fetches.
        self._failed_client_ids: set[str] = set()

        self._thread_id: Optional[str] = None
        self._entitled = False
        self._awaiting_reply = False
        self._typing = False

        self._connection = ConnectionState.IDLE
        self._channel: Optional[ChannelHandle] = None
        self._channel_generation = 0
        self._failed_connects = 0
        self._connection_warned = False

        self._response_timer = TimerSlot("response-timeout")
        self._typing_timer = TimerSlot("typing-timeout")
        self._reconnect_timer = TimerSlot("reconnect")
        self._tasks: set[asyncio.Task[Any]] = set()

        self._opened = False
        self._closed = False

    async def __aenter__(self) -> "ChatSession":
        try:
            await self.open()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- state -------------------------------------------------------------

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    @property
    def awaiting_reply(self) -> bool:
        return self._awaiting_reply

    @property
    def typing(self) -> bool:
        return self._typing

    @property
    def connection(self) -> ConnectionState:
        return self._connection

    @property
    def entitled(self) -> bool:
        return self._entitled

    @property
    def thread_id(self) -> Optional[str]:
        return self._thread_id

    # -- lifecycle ---------------------------------------------------------

    async def open(self) -> None:
        """Load the profile and history, then open the realtime subscription."""

        if self._opened:
            raise RuntimeError("ChatSession already opened")
        self._opened = True

        profile = await self._backend.fetch_profile()
        self._thread_id = profile.user_id
        self._entitled = profile.subscription_active

        history = await self._backend.fetch_messages()
        self._replace_with(history)
        self._render()
        self._view.scroll_to_bottom()
        self._connect()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response_timer.cancel()
        self._typing_timer.cancel()
        self._reconnect_timer.cancel()

        channel = self._release_channel()
        if channel is not None:
            await channel.wait_closed()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._connection = ConnectionState.CLOSED
        logger.debug("Chat session for %s closed", self._thread_id)

    def _ensure_open(self) -> str:
        """Return the thread id of an open session."""

        if not self._opened or self._closed or self._thread_id is None:
            raise RuntimeError("ChatSession is not open")
        return self._thread_id

    # -- realtime subscription ----------------------------------------------

    def _connect(self) -> None:
        if self._closed or self._thread_id is None:
            return
        self._release_channel()
        self._channel_generation += 1
        generation = self._channel_generation
        self._connection = ConnectionState.CONNECTING
        try:
            channel = self._transport.subscribe(
                self._thread_id,
                functools.partial(self._on_insert, generation),
                functools.partial(self._on_status, generation),
            )
        except Exception:  # noqa: BLE001
            logger.exception("Opening the realtime channel failed")
            self._on_status(generation, SubscriptionStatus.ERROR)
            return
        if generation != self._channel_generation:
            # Failed while subscribing; a reconnect is already scheduled.
            channel.close()
            self._spawn(channel.wait_closed())
            return
        self._channel = channel

    def _release_channel(self) -> Optional[ChannelHandle]:
        channel, self._channel = self._channel, None
        # Callbacks from the released channel become stale.
        self._channel_generation += 1
        if channel is not None:
            channel.close()
        return channel

    def _on_status(self, generation: int, status: SubscriptionStatus) -> None:
        if generation != self._channel_generation or self._closed:
            return

        if status is SubscriptionStatus.SUBSCRIBED:
            recovered = self._failed_connects > 0
            self._connection = ConnectionState.CONNECTED
            self._failed_connects = 0
            self._connection_warned = False
            self._reconnect_timer.cancel()
            logger.info("Realtime channel subscribed for thread %s", self._thread_id)
            if recovered:
                # Inserts published while disconnected were never pushed.
                self._spawn(self._reload())
            return

        self._connection = ConnectionState.DISCONNECTED
        self._failed_connects += 1
        logger.warning(
            "Realtime channel %s (attempt %d); reconnecting in %.1fs",
            status.value,
            self._failed_connects,
            self._settings.reconnect_delay_seconds,
        )
        channel = self._release_channel()
        if channel is not None:
            self._spawn(channel.wait_closed())
        if self._failed_connects >= self._settings.reconnect_warn_after and not self._connection_warned:
            self._connection_warned = True
            self._view.notify("warning", ConnectionLost().message)
        self._reconnect_timer.schedule(self._settings.reconnect_delay_seconds, self._connect)

    def _on_insert(self, generation: int, message: MessageOut) -> None:
        if generation != self._channel_generation or self._closed:
            return
        if message.thread_id != self._thread_id:
            return
        self._merge([message])

    # -- sending -------------------------------------------------------------

    async def send(self, text: Optional[str] = None, *, attachment: Optional[Attachment] = None) -> ChatMessage:
        """Send a message optimistically.

        Raises ``EntitlementRequired``, ``ReplyOutstanding`` or
        ``InvalidRequest`` before anything is displayed or sent. Delivery
        failures are not raised: the returned message has status ``failed``
        and the view is notified.
        """

        thread_id = self._ensure_open()
        if not self._entitled:
            self._reject(EntitlementRequired())
        if self._awaiting_reply:
            self._reject(ReplyOutstanding())

        client_id = f"{TEMP_ID_PREFIX}{uuid4().hex}"
        try:
            request = build_dispatch_request(text, attachment, client_id=client_id)
        except (ValidationError, ValueError) as exc:
            self._reject(InvalidRequest("Type a message or attach a file"), cause=exc)

        kind = attachment.type if attachment is not None else MessageKind.TEXT
        placeholder = ChatMessage(
            id=client_id,
            thread_id=thread_id,
            user_id=thread_id,
            sender=Sender.USER,
            content=(text or "").strip() or (attachment.name if attachment else ""),
            type=kind,
            media_url=attachment.url if attachment else None,
            client_id=client_id,
            created_at=utcnow(),
            status=DeliveryStatus.PENDING,
            local=True,
        )
        near_bottom = self._view.is_near_bottom()
        self._messages.append(placeholder)
        self._arrival[placeholder.id] = next(self._arrivals)
        self._sort()
        self._begin_awaiting()
        self._render()
        self._scroll(near_bottom)

        try:
            receipt = await self._backend.dispatch(request)
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, ChatError):
                error = exc
                logger.warning("Send %s failed: %s", client_id, exc.code.value)
            else:
                error = UpstreamDispatchFailed()
                logger.exception("Send %s failed unexpectedly", client_id)
            if self._closed:
                return self._find_by_client_id(client_id) or placeholder
            self._failed_client_ids.add(client_id)
            self._set_status(client_id, DeliveryStatus.FAILED)
            self._end_awaiting()
            self._render()
            self._view.notify("error", error.message)
            return self._find_by_client_id(client_id) or placeholder

        if self._closed:
            return self._find_by_client_id(client_id) or placeholder
        self._set_status(client_id, DeliveryStatus.SENT, only_if=DeliveryStatus.PENDING)
        rows = [receipt.user_message]
        if receipt.assistant_message is not None:
            rows.append(receipt.assistant_message)
        changed = self._merge(rows)
        if receipt.delivery == "sync" and receipt.assistant_message is None and receipt.response:
            # The reply was not stored, so no row will ever arrive for it.
            self._show_unsaved_reply(thread_id, receipt.response)
        elif not changed:
            self._render()
        return self._find_by_client_id(client_id) or placeholder

    def _show_unsaved_reply(self, thread_id: str, text: str) -> None:
        near_bottom = self._view.is_near_bottom()
        reply = ChatMessage(
            id=f"{TEMP_ID_PREFIX}{uuid4().hex}",
            thread_id=thread_id,
            user_id=thread_id,
            sender=Sender.ASSISTANT,
            content=text,
            created_at=utcnow(),
            local=True,
        )
        self._messages.append(reply)
        self._arrival[reply.id] = next(self._arrivals)
        self._sort()
        self._end_awaiting()
        self._render()
        self._scroll(near_bottom)

    async def send_file(
        self,
        filename: str,
        content_type: Optional[str],
        data: bytes,
        *,
        text: Optional[str] = None,
    ) -> ChatMessage:
        """Upload an attachment, then send it. Upload errors are raised before anything is sent."""

        self._ensure_open()
        if not self._entitled:
            self._reject(EntitlementRequired())
        if self._awaiting_reply:
            self._reject(ReplyOutstanding())
        try:
            attachment = await self._backend.upload(filename, content_type, data)
        except ChatError as exc:
            self._view.notify("error", exc.message)
            raise
        return await self.send(text, attachment=attachment)

    def _reject(self, error: ChatError, cause: Optional[BaseException] = None) -> NoReturn:
        self._view.notify("error", error.message)
        raise error from cause

    # -- recovery ------------------------------------------------------------

    async def refresh(self) -> None:
        """Give up on the outstanding reply and re-fetch the thread."""

        self._ensure_open()
        self._end_awaiting()
        self._render()
        await self._reload()

    def _begin_awaiting(self) -> None:
        self._awaiting_reply = True
        self._typing = True
        self._response_timer.schedule(self._settings.response_timeout_seconds, self._on_response_timeout)
        self._typing_timer.schedule(self._settings.typing_timeout_seconds, self._on_typing_timeout)

    def _end_awaiting(self) -> None:
        self._awaiting_reply = False
        self._typing = False
        self._response_timer.cancel()
        self._typing_timer.cancel()

    def _on_response_timeout(self) -> None:
        if self._closed or not self._awaiting_reply:
            return
        logger.info("No reply within %.0fs; re-fetching thread", self._settings.response_timeout_seconds)
        self._end_awaiting()
        self._render()
        self._view.notify("warning", "The reply is taking longer than expected. The conversation was refreshed")
        self._spawn(self._reload())

    def _on_typing_timeout(self) -> None:
        if self._closed or not self._typing:
            return
        self._typing = False
        self._render()

    async def _reload(self) -> None:
        try:
            rows = await self._backend.fetch_messages()
        except ChatError as exc:
            logger.warning("Re-fetching thread failed: %s", exc.code.value)
            self._view.notify("error", exc.message)
            return
        if self._closed:
            return
        near_bottom = self._view.is_near_bottom()
        before = len(self._messages)
        if self._replace_with(rows) and self._awaiting_reply:
            self._end_awaiting()
        self._render()
        if len(self._messages) > before:
            self._scroll(near_bottom)

    # -- reconciliation ------------------------------------------------------

    def _merge(self, rows: Iterable[MessageOut]) -> bool:
        near_bottom = self._view.is_near_bottom()
        changed = False
        assistant_arrived = False
        for row in rows:
            if self._apply(row):
                changed = True
                assistant_arrived = assistant_arrived or row.sender is Sender.ASSISTANT
        if not changed:
            return False
        self._sort()
        if assistant_arrived:
            self._end_awaiting()
        self._render()
        self._scroll(near_bottom)
        return True

    def _apply(self, row: MessageOut) -> bool:
        if any(existing.id == row.id for existing in self._messages):
            return False

        stored = ChatMessage(**row.model_dump())
        index = self._find_placeholder(row)
        if row.client_id in self._failed_client_ids:
            # The row exists but its dispatch failed; keep the inline failure marker.
            stored = stored.model_copy(update={"status": DeliveryStatus.FAILED})
        if index is None:
            self._messages.append(stored)
            self._arrival[stored.id] = next(self._arrivals)
            return True

        placeholder = self._messages[index]
        if placeholder.status is DeliveryStatus.FAILED:
            stored = stored.model_copy(update={"status": DeliveryStatus.FAILED})
        self._messages[index] = stored
        self._arrival[stored.id] = self._arrival.pop(placeholder.id, next(self._arrivals))
        return True

    def _find_placeholder(self, row: MessageOut) -> Optional[int]:
        if row.sender is not Sender.USER:
            return None
        if row.client_id:
            for index, message in enumerate(self._messages):
                if message.local and message.client_id == row.client_id:
                    return index
            return None
        for index, message in enumerate(self._messages):
            if (
                message.local
                and message.status is not DeliveryStatus.FAILED
                and message.sender is Sender.USER
                and message.type is row.type
                and message.content == row.content
            ):
                return index
        return None

    def _replace_with(self, rows: Iterable[MessageOut]) -> bool:
        """Swap in a fetched thread, keeping placeholders it does not account for.

        Returns whether an assistant row that was not displayed before arrived.
        """

        known = {message.id for message in self._messages if not message.local}
        self._messages = [message for message in self._messages if message.local]
        self._arrival = {message.id: self._arrival[message.id] for message in self._messages}
        new_assistant = False
        for row in rows:
            if self._apply(row) and row.sender is Sender.ASSISTANT and row.id not in known:
                new_assistant = True
        self._sort()
        return new_assistant

    def _sort(self) -> None:
        self._messages.sort(key=lambda message: (message.created_at, self._arrival[message.id]))

    def _find_by_client_id(self, client_id: str) -> Optional[ChatMessage]:
        for message in self._messages:
            if message.client_id == client_id:
                return message
        return None

    def _set_status(
        self,
        client_id: str,
        status: DeliveryStatus,
        only_if: Optional[DeliveryStatus] = None,
    ) -> None:
        for index, message in enumerate(self._messages):
            if message.client_id != client_id or message.sender is not Sender.USER:
                continue
            if only_if is not None and message.status is not only_if:
                return
            self._messages[index] = message.model_copy(update={"status": status})
            return

    # -- view ----------------------------------------------------------------

    def _render(self) -> None:
        self._view.render(self.messages, typing=self._typing)

    def _scroll(self, was_near_bottom: bool) -> None:
        if was_near_bottom:
            self._view.scroll_to_bottom()
        else:
            self._view.show_new_messages_hint()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        if self._closed:
            coro.close()
            return
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Chat session background task failed", exc_info=task.exception())
