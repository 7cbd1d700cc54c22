"""Backends and realtime transports used by :class:`ChatSession`.

Two flavours of each: HTTP/WebSocket implementations that talk to a running
gateway, and in-process ones that call the gateway services directly (used
when the session and the gateway share an event loop, e.g. in tests).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Callable, Optional, Protocol, TypeVar, Union
from urllib.parse import quote

import httpx
import websockets
from pydantic import BaseModel, ValidationError
from websockets.exceptions import WebSocketException

from ..config import get_settings
from ..errors import ChatError, ConnectionLost, UpstreamDispatchFailed, error_from_payload
from ..schemas import Attachment, DispatchReceipt, MediaDispatch, MessageOut, ProfileOut, TextDispatch
from ..services.dispatch import DispatchGateway
from ..services.messages import list_thread_messages
from ..services.profiles import get_profile, serialize_profile
from ..services.realtime import RealtimeNotifier, Subscription, SubscriptionStatus
from ..services.uploads import AttachmentUploader

logger = logging.getLogger(__name__)

InsertHandler = Callable[[MessageOut], None]
StatusHandler = Callable[[SubscriptionStatus], None]
ModelT = TypeVar("ModelT", bound=BaseModel)


class ChatBackend(Protocol):
    async def fetch_profile(self) -> ProfileOut: ...

    async def fetch_messages(self) -> list[MessageOut]: ...

    async def dispatch(self, request: Union[TextDispatch, MediaDispatch]) -> DispatchReceipt: ...

    async def upload(self, filename: str, content_type: Optional[str], data: bytes) -> Attachment: ...


class ChannelHandle(Protocol):
    def close(self) -> None: ...

    async def wait_closed(self) -> None: ...


class RealtimeTransport(Protocol):
    def subscribe(self, thread_id: str, on_insert: InsertHandler, on_status: StatusHandler) -> ChannelHandle: ...


class HttpChatBackend:
    """Talks to the gateway's REST endpoints with an access token."""

    def __init__(
        self,
        base_url: str,
        access_token: str,
        *,
        timeout: Optional[float] = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if timeout is None:
            timeout = get_settings().chat.request_timeout_seconds
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
        self._headers = {"Authorization": f"Bearer {access_token}"}

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, *, on_network_error: type[ChatError], **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, headers=self._headers, **kwargs)
        except httpx.RequestError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise on_network_error(f"Could not reach the server: {exc.__class__.__name__}") from exc

        if response.is_success:
            try:
                return response.json()
            except ValueError as exc:
                logger.warning("%s %s returned a non-JSON body", method, path)
                raise on_network_error("The server sent an unreadable response") from exc
        try:
            body = response.json()
        except ValueError:
            body = None
        raise error_from_payload(body, response.status_code)

    @staticmethod
    def _parse(model: type[ModelT], data: Any, on_invalid: type[ChatError]) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            logger.warning("Server response did not match %s: %s", model.__name__, exc)
            raise on_invalid("The server sent an unexpected response") from exc

    async def fetch_profile(self) -> ProfileOut:
        data = await self._request("GET", "/api/profile", on_network_error=ConnectionLost)
        return self._parse(ProfileOut, data, ConnectionLost)

    async def fetch_messages(self) -> list[MessageOut]:
        data = await self._request("GET", "/api/messages", on_network_error=ConnectionLost)
        if not isinstance(data, list):
            raise ConnectionLost("The server sent an unexpected response")
        return [self._parse(MessageOut, item, ConnectionLost) for item in data]

    async def dispatch(self, request: Union[TextDispatch, MediaDispatch]) -> DispatchReceipt:
        data = await self._request(
            "POST",
            "/api/dispatch",
            json=request.model_dump(mode="json", exclude_none=True),
            on_network_error=UpstreamDispatchFailed,
        )
        return self._parse(DispatchReceipt, data, UpstreamDispatchFailed)

    async def upload(self, filename: str, content_type: Optional[str], data: bytes) -> Attachment:
        files = {"file": (filename, data, content_type or "application/octet-stream")}
        body = await self._request("POST", "/api/media", files=files, on_network_error=ConnectionLost)
        return self._parse(Attachment, body, ConnectionLost)


class LocalChatBackend:
    """Calls the gateway services in-process on behalf of one actor."""

    def __init__(self, actor_id: str, gateway: DispatchGateway, uploader: AttachmentUploader | None = None) -> None:
        self._actor_id = actor_id
        self._gateway = gateway
        self._uploader = uploader

    async def fetch_profile(self) -> ProfileOut:
        profile = await get_profile(self._actor_id)
        if profile is None:
            return ProfileOut(user_id=self._actor_id, subscription_active=False)
        return serialize_profile(profile)

    async def fetch_messages(self) -> list[MessageOut]:
        return await list_thread_messages(self._actor_id)

    async def dispatch(self, request: Union[TextDispatch, MediaDispatch]) -> DispatchReceipt:
        return await self._gateway.dispatch(self._actor_id, request)

    async def upload(self, filename: str, content_type: Optional[str], data: bytes) -> Attachment:
        if self._uploader is None:
            raise RuntimeError("LocalChatBackend was created without an uploader")
        return await self._uploader.upload(self._actor_id, filename, content_type, data)


class _LocalChannel:
    def __init__(self, notifier: RealtimeNotifier) -> None:
        self._notifier = notifier
        self.subscription: Optional[Subscription] = None

    def close(self) -> None:
        if self.subscription is not None:
            self._notifier.unsubscribe(self.subscription)

    async def wait_closed(self) -> None:
        return None


class LocalRealtimeTransport:
    """Subscribes directly to an in-process :class:`RealtimeNotifier`."""

    def __init__(self, notifier: RealtimeNotifier) -> None:
        self._notifier = notifier

    def subscribe(self, thread_id: str, on_insert: InsertHandler, on_status: StatusHandler) -> _LocalChannel:
        channel = _LocalChannel(self._notifier)
        channel.subscription = self._notifier.subscribe(thread_id, on_insert, on_status)
        return channel


class _WebSocketChannel:
    def __init__(
        self,
        uri: str,
        thread_id: str,
        on_insert: InsertHandler,
        on_status: StatusHandler,
        open_timeout: float,
    ) -> None:
        self._uri = uri
        self._thread_id = thread_id
        self._on_insert = on_insert
        self._on_status = on_status
        self._open_timeout = open_timeout
        self._closed = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _report(self, status: SubscriptionStatus) -> None:
        if not self._closed:
            self._on_status(status)

    async def _run(self) -> None:
        try:
            async with websockets.connect(self._uri, open_timeout=self._open_timeout) as socket:
                async for raw in socket:
                    self._handle_frame(raw)
            logger.info("Realtime socket closed by server")
            self._report(SubscriptionStatus.ERROR)
        except asyncio.CancelledError:
            raise
        except (asyncio.TimeoutError, TimeoutError):
            logger.warning("Realtime subscribe handshake timed out")
            self._report(SubscriptionStatus.TIMED_OUT)
        except (OSError, WebSocketException, ValueError) as exc:
            logger.warning("Realtime socket failed: %s", exc)
            self._report(SubscriptionStatus.ERROR)

    def _handle_frame(self, raw: Union[str, bytes]) -> None:
        if raw == "pong":
            return
        frame = json.loads(raw)
        frame_type = frame.get("type")
        if frame_type == "status" and frame.get("status") == SubscriptionStatus.SUBSCRIBED.value:
            self._report(SubscriptionStatus.SUBSCRIBED)
        elif frame_type == "insert":
            message = MessageOut.model_validate(frame["message"])
            if message.thread_id == self._thread_id and not self._closed:
                self._on_insert(message)

    def close(self) -> None:
        self._closed = True
        self._task.cancel()

    async def wait_closed(self) -> None:
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


class WebSocketRealtimeTransport:
    """Connects to the gateway's ``/ws/messages`` endpoint."""

    def __init__(self, ws_base_url: str, access_token: str, *, open_timeout: float = 10.0) -> None:
        self._uri = f"{ws_base_url.rstrip('/')}/ws/messages?token={quote(access_token)}"
        self._open_timeout = open_timeout

    def subscribe(self, thread_id: str, on_insert: InsertHandler, on_status: StatusHandler) -> _WebSocketChannel:
        return _WebSocketChannel(self._uri, thread_id, on_insert, on_status, self._open_timeout)
