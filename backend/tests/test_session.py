"""Tests for the client-side chat session controller.

The backend, realtime transport and view are in-memory fakes; timings are
shortened through ``ChatSettings`` so timeout paths run in milliseconds.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

import pytest

from chatpsi.client.session import ChatSession, ConnectionState
from chatpsi.config import ChatSettings
from chatpsi.errors import EntitlementRequired, InvalidRequest, ReplyOutstanding, UpstreamDispatchFailed
from chatpsi.schemas import (
    Attachment,
    DeliveryStatus,
    DispatchReceipt,
    MessageKind,
    MessageOut,
    ProfileOut,
    Sender,
)
from chatpsi.services.realtime import SubscriptionStatus

THREAD = str(uuid4())
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def row(
    content: str,
    *,
    sender: Sender = Sender.USER,
    seconds: float = 0,
    client_id: Optional[str] = None,
    kind: MessageKind = MessageKind.TEXT,
    created_at: Optional[datetime] = None,
) -> MessageOut:
    return MessageOut(
        id=str(uuid4()),
        thread_id=THREAD,
        user_id=THREAD,
        sender=sender,
        content=content,
        type=kind,
        client_id=client_id,
        created_at=created_at or BASE_TIME + timedelta(seconds=seconds),
    )


class FakeBackend:
    def __init__(self, *, entitled: bool = True, history: Optional[list[MessageOut]] = None) -> None:
        self.profile = ProfileOut(user_id=THREAD, subscription_active=entitled)
        self.rows: list[MessageOut] = list(history or [])
        self.fetch_calls = 0
        self.dispatched = []
        self.uploads = []
        self.reply: Optional[str] = "Olá!"
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.last_user_row: Optional[MessageOut] = None

    async def fetch_profile(self) -> ProfileOut:
        return self.profile

    async def fetch_messages(self) -> list[MessageOut]:
        self.fetch_calls += 1
        return list(self.rows)

    async def dispatch(self, request) -> DispatchReceipt:
        self.dispatched.append(request)
        content = request.text if request.kind == "text" else (request.text or request.file_name)
        user_row = row(
            content,
            kind=MessageKind(request.kind),
            client_id=request.client_id,
            created_at=datetime.now(timezone.utc),
        )
        self.rows.append(user_row)
        self.last_user_row = user_row
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.reply is None:
            return DispatchReceipt(delivery="async", user_message=user_row)
        assistant = row(self.reply, sender=Sender.ASSISTANT, created_at=datetime.now(timezone.utc))
        self.rows.append(assistant)
        return DispatchReceipt(delivery="sync", user_message=user_row, assistant_message=assistant, response=self.reply)

    async def upload(self, filename, content_type, data) -> Attachment:
        self.uploads.append((filename, content_type, data))
        return Attachment(url=f"https://cdn.test/{filename}", type=MessageKind.AUDIO, name=filename)


class FakeChannel:
    def __init__(self, thread_id, on_insert, on_status) -> None:
        self.thread_id = thread_id
        self.on_insert = on_insert
        self.on_status = on_status
        self.closed = False

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class FakeTransport:
    def __init__(self) -> None:
        self.channels: list[FakeChannel] = []

    def subscribe(self, thread_id, on_insert, on_status) -> FakeChannel:
        channel = FakeChannel(thread_id, on_insert, on_status)
        self.channels.append(channel)
        return channel

    @property
    def current(self) -> FakeChannel:
        return self.channels[-1]

    @property
    def open_channels(self) -> list[FakeChannel]:
        return [channel for channel in self.channels if not channel.closed]


class FakeView:
    def __init__(self) -> None:
        self.near_bottom = True
        self.renders = []
        self.scrolls = 0
        self.hints = 0
        self.notifications: list[tuple[str, str]] = []

    def render(self, messages, *, typing) -> None:
        self.renders.append((list(messages), typing))

    def is_near_bottom(self) -> bool:
        return self.near_bottom

    def scroll_to_bottom(self) -> None:
        self.scrolls += 1

    def show_new_messages_hint(self) -> None:
        self.hints += 1

    def notify(self, level, message) -> None:
        self.notifications.append((level, message))


FAST = ChatSettings(
    response_timeout_seconds=0.05,
    typing_timeout_seconds=0.05,
    reconnect_delay_seconds=0.01,
    reconnect_warn_after=2,
)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def view():
    return FakeView()


async def _until(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


class TestOpen:
    @pytest.mark.asyncio
    async def test_loads_history_in_order_and_subscribes_once(self, transport, view):
        backend = FakeBackend(history=[row("second", seconds=2), row("first", seconds=1)])

        async with ChatSession(backend, transport, view, FAST) as session:
            assert [m.content for m in session.messages] == ["first", "second"]
            assert session.thread_id == THREAD
            assert session.entitled
            assert len(transport.channels) == 1
            assert transport.current.thread_id == THREAD
            assert view.scrolls == 1

            transport.current.on_status(SubscriptionStatus.SUBSCRIBED)
            assert session.connection is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_close_releases_everything(self, backend, transport, view):
        session = ChatSession(backend, transport, view, FAST)
        await session.open()
        backend.reply = None
        await session.send("hello")

        await session.close()
        await asyncio.sleep(0.1)

        assert session.connection is ConnectionState.CLOSED
        assert transport.open_channels == []
        assert backend.fetch_calls == 1
        transport.current.on_insert(row("late", sender=Sender.ASSISTANT, seconds=99))
        assert all(m.content != "late" for m in session.messages)


class TestRealtimeMerge:
    """Incoming rows are de-duplicated and kept in created_at order."""

    @pytest.mark.asyncio
    async def test_duplicate_insert_is_ignored(self, backend, transport, view):
        async with ChatSession(backend, transport, view, FAST) as session:
            incoming = row("hi", sender=Sender.ASSISTANT, seconds=5)
            transport.current.on_insert(incoming)
            transport.current.on_insert(incoming)

            assert [m.id for m in session.messages] == [incoming.id]

    @pytest.mark.asyncio
    async def test_out_of_order_insert_is_sorted(self, transport, view):
        backend = FakeBackend(history=[row("b", seconds=10)])

        async with ChatSession(backend, transport, view, FAST) as session:
            transport.current.on_insert(row("a", seconds=5))
            transport.current.on_insert(row("c", seconds=15))

            assert [m.content for m in session.messages] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_equal_timestamps_keep_arrival_order(self, backend, transport, view):
        async with ChatSession(backend, transport, view, FAST) as session:
            for content in ("x", "y", "z"):
                transport.current.on_insert(row(content, seconds=1))

            assert [m.content for m in session.messages] == ["x", "y", "z"]

    @pytest.mark.asyncio
    async def test_scroll_follows_only_when_near_bottom(self, backend, transport, view):
        async with ChatSession(backend, transport, view, FAST):
            view.near_bottom = False
            transport.current.on_insert(row("one", sender=Sender.ASSISTANT, seconds=1))
            assert (view.scrolls, view.hints) == (1, 1)

            view.near_bottom = True
            transport.current.on_insert(row("two", sender=Sender.ASSISTANT, seconds=2))
            assert (view.scrolls, view.hints) == (2, 1)


class TestSend:
    @pytest.mark.asyncio
    async def test_placeholder_then_reconciled_rows(self, backend, transport, view):
        backend.gate = asyncio.Event()

        async with ChatSession(backend, transport, view, FAST) as session:
            task = asyncio.create_task(session.send("  Oi  "))
            await _until(lambda: backend.dispatched)

            placeholder = session.messages[-1]
            assert placeholder.local
            assert placeholder.status is DeliveryStatus.PENDING
            assert placeholder.content == "Oi"
            assert session.awaiting_reply and session.typing

            with pytest.raises(ReplyOutstanding):
                await session.send("another")

            backend.gate.set()
            sent = await task

            assert sent.id == backend.last_user_row.id
            assert sent.status is DeliveryStatus.SENT
            assert [(m.sender, m.local) for m in session.messages] == [(Sender.USER, False), (Sender.ASSISTANT, False)]
            assert not session.awaiting_reply and not session.typing

    @pytest.mark.asyncio
    async def test_realtime_echo_replaces_placeholder_once(self, backend, transport, view):
        backend.gate = asyncio.Event()

        async with ChatSession(backend, transport, view, FAST) as session:
            task = asyncio.create_task(session.send("hello"))
            await _until(lambda: backend.dispatched)

            transport.current.on_insert(backend.last_user_row)
            assert len(session.messages) == 1
            assert not session.messages[0].local

            backend.gate.set()
            await task

            user_rows = [m for m in session.messages if m.sender is Sender.USER]
            assert [m.id for m in user_rows] == [backend.last_user_row.id]

    @pytest.mark.asyncio
    async def test_row_without_client_id_matches_by_content(self, backend, transport, view):
        backend.gate = asyncio.Event()

        async with ChatSession(backend, transport, view, FAST) as session:
            task = asyncio.create_task(session.send("same words"))
            await _until(lambda: backend.dispatched)

            transport.current.on_insert(row("same words", created_at=datetime.now(timezone.utc)))

            assert len(session.messages) == 1
            assert not session.messages[0].local
            backend.gate.set()
            await task

    @pytest.mark.asyncio
    async def test_delivery_failure_marks_failed_and_unlocks(self, backend, transport, view):
        backend.error = UpstreamDispatchFailed()

        async with ChatSession(backend, transport, view, FAST) as session:
            sent = await session.send("hello")

            assert sent.status is DeliveryStatus.FAILED
            assert not session.awaiting_reply and not session.typing
            assert view.notifications[-1] == ("error", UpstreamDispatchFailed.default_message)

            # The gateway saved the row before failing; its echo keeps the failure marker.
            transport.current.on_insert(backend.last_user_row)
            assert len(session.messages) == 1
            assert session.messages[0].id == backend.last_user_row.id
            assert session.messages[0].status is DeliveryStatus.FAILED

            backend.error = None
            retry = await session.send("hello again")
            assert retry.status is DeliveryStatus.SENT

    @pytest.mark.asyncio
    async def test_unexpected_backend_error_is_a_delivery_failure(self, backend, transport, view):
        backend.error = ValueError("Expecting value: line 1 column 1 (char 0)")

        async with ChatSession(backend, transport, view, FAST) as session:
            sent = await session.send("hello")

            assert sent.status is DeliveryStatus.FAILED
            assert not session.awaiting_reply and not session.typing
            assert view.notifications[-1] == ("error", UpstreamDispatchFailed.default_message)

    @pytest.mark.asyncio
    async def test_not_entitled_sends_nothing(self, transport, view):
        backend = FakeBackend(entitled=False)

        async with ChatSession(backend, transport, view, FAST) as session:
            with pytest.raises(EntitlementRequired):
                await session.send("hello")

            assert session.messages == ()
            assert backend.dispatched == []
            assert view.notifications[-1][0] == "error"

    @pytest.mark.asyncio
    async def test_blank_text_is_rejected(self, backend, transport, view):
        async with ChatSession(backend, transport, view, FAST) as session:
            with pytest.raises(InvalidRequest):
                await session.send("   ")

            assert session.messages == ()
            assert not session.awaiting_reply

    @pytest.mark.asyncio
    async def test_send_file_uploads_then_dispatches_media(self, backend, transport, view):
        backend.reply = None

        async with ChatSession(backend, transport, view, FAST) as session:
            sent = await session.send_file("voice.webm", "audio/webm", b"OggS")

            assert backend.uploads == [("voice.webm", "audio/webm", b"OggS")]
            request = backend.dispatched[0]
            assert request.kind == "audio"
            assert request.media_url == "https://cdn.test/voice.webm"
            assert sent.type is MessageKind.AUDIO


class TestAwaitingReply:
    """Timers around an outstanding reply."""

    @pytest.mark.asyncio
    async def test_response_timeout_refetches_exactly_once(self, backend, transport, view):
        backend.reply = None

        async with ChatSession(backend, transport, view, FAST) as session:
            await session.send("hello")
            assert session.awaiting_reply

            await asyncio.sleep(0.15)

            assert not session.awaiting_reply
            assert backend.fetch_calls == 2
            assert view.notifications[-1][0] == "warning"

            await asyncio.sleep(0.1)
            assert backend.fetch_calls == 2

    @pytest.mark.asyncio
    async def test_realtime_reply_cancels_timers(self, backend, transport, view):
        backend.reply = None

        async with ChatSession(backend, transport, view, FAST) as session:
            await session.send("hello")
            transport.current.on_insert(row("answer", sender=Sender.ASSISTANT, created_at=datetime.now(timezone.utc)))

            assert not session.awaiting_reply
            await asyncio.sleep(0.15)
            assert backend.fetch_calls == 1
            assert view.notifications == []

    @pytest.mark.asyncio
    async def test_typing_indicator_expires_before_reply_window(self, backend, transport, view):
        backend.reply = None
        settings = ChatSettings(response_timeout_seconds=1.0, typing_timeout_seconds=0.02)

        async with ChatSession(backend, transport, view, settings) as session:
            await session.send("hello")
            assert session.typing

            await asyncio.sleep(0.08)

            assert not session.typing
            assert session.awaiting_reply
            assert view.renders[-1][1] is False

    @pytest.mark.asyncio
    async def test_refresh_gives_up_waiting_and_refetches(self, backend, transport, view):
        backend.reply = None

        async with ChatSession(backend, transport, view, FAST) as session:
            await session.send("hello")
            backend.rows.append(row("late reply", sender=Sender.ASSISTANT, created_at=datetime.now(timezone.utc)))

            await session.refresh()

            assert not session.awaiting_reply
            assert backend.fetch_calls == 2
            assert session.messages[-1].content == "late reply"


class TestReconnect:
    @pytest.mark.asyncio
    async def test_error_reconnects_with_single_live_channel(self, backend, transport, view):
        async with ChatSession(backend, transport, view, FAST) as session:
            first = transport.current
            first.on_status(SubscriptionStatus.SUBSCRIBED)

            first.on_status(SubscriptionStatus.ERROR)
            assert session.connection is ConnectionState.DISCONNECTED
            assert first.closed

            await _until(lambda: len(transport.channels) == 2)
            assert transport.open_channels == [transport.current]

            # Stale callbacks from the released channel change nothing.
            first.on_insert(row("ghost", sender=Sender.ASSISTANT, seconds=1))
            first.on_status(SubscriptionStatus.SUBSCRIBED)
            assert session.messages == ()
            assert session.connection is ConnectionState.CONNECTING

            backend.rows.append(row("missed while offline", sender=Sender.ASSISTANT, seconds=1))
            transport.current.on_status(SubscriptionStatus.SUBSCRIBED)
            assert session.connection is ConnectionState.CONNECTED

            await _until(lambda: backend.fetch_calls == 2)
            await _until(lambda: len(session.messages) == 1)
            assert session.messages[0].content == "missed while offline"

    @pytest.mark.asyncio
    async def test_warns_once_after_repeated_failures(self, backend, transport, view):
        async with ChatSession(backend, transport, view, FAST):
            for attempt in range(1, 4):
                transport.current.on_status(SubscriptionStatus.TIMED_OUT)
                await _until(lambda: len(transport.channels) == attempt + 1)

            warnings = [n for n in view.notifications if n[0] == "warning"]
            assert len(warnings) == 1
            assert len(transport.open_channels) == 1

    @pytest.mark.asyncio
    async def test_subscribe_raising_schedules_retry(self, backend, view):
        class FlakyTransport(FakeTransport):
            def __init__(self):
                super().__init__()
                self.failures = 1

            def subscribe(self, thread_id, on_insert, on_status):
                if self.failures:
                    self.failures -= 1
                    raise OSError("network down")
                return super().subscribe(thread_id, on_insert, on_status)

        transport = FlakyTransport()
        async with ChatSession(backend, transport, view, FAST) as session:
            assert session.connection is ConnectionState.DISCONNECTED
            await _until(lambda: len(transport.channels) == 1)
