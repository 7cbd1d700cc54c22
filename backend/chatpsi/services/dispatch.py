"""Dispatch gateway: persist an outbound message, forward it, relay the reply."""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from ..config import get_settings
from ..errors import (
    EntitlementRequired,
    InvalidRequest,
    NotFound,
    PersistenceFailed,
    Unauthenticated,
    UpstreamDispatchFailed,
)
from ..schemas import (
    DispatchReceipt,
    MediaDispatch,
    MessageKind,
    MessageOut,
    ProcessorCallback,
    Sender,
    TextDispatch,
    dispatch_kind,
)
from ..storage import WebhookEvent, get_db_manager
from ..utils import redact
from .messages import insert_message
from .processor import ProcessorClient, ProcessorError, build_processor_payload, get_processor_client
from .profiles import get_profile

logger = logging.getLogger(__name__)

ATTACHMENT_LABEL = "File sent"


class DispatchGateway:
    """Turns a send request into a stored message plus a processor call."""

    def __init__(self, processor: ProcessorClient) -> None:
        self._processor = processor

    async def dispatch(self, actor_id: str, request: Union[TextDispatch, MediaDispatch]) -> DispatchReceipt:
        profile = await get_profile(actor_id)
        if profile is None or not profile.subscription_active:
            logger.info("Rejected send from %s: subscription inactive", actor_id)
            raise EntitlementRequired()

        kind = dispatch_kind(request)
        thread_id = actor_id
        if isinstance(request, TextDispatch):
            content = request.text
            media_url = None
            processor_value = request.text
        else:
            content = request.text or request.file_name or ATTACHMENT_LABEL
            media_url = request.media_url
            processor_value = request.media_url

        try:
            user_message = await insert_message(
                thread_id,
                actor_id,
                Sender.USER,
                content,
                kind,
                media_url=media_url,
                client_id=request.client_id,
                metadata={"openai_thread_id": profile.openai_thread_id} if profile.openai_thread_id else None,
            )
        except SQLAlchemyError as exc:
            logger.exception("Failed to store outbound message for %s", actor_id)
            raise PersistenceFailed() from exc

        payload = build_processor_payload(
            actor_id,
            kind,
            processor_value,
            nickname=profile.nickname,
            openai_thread_id=profile.openai_thread_id,
            client_id=request.client_id,
        )

        try:
            reply = await self._processor.send(payload)
        except ProcessorError as exc:
            logger.warning("Processor dispatch failed for message %s: %s", user_message.id, exc)
            await self._record_event("outbound", payload, exc.status_code, str(exc))
            raise UpstreamDispatchFailed(details={"message_id": user_message.id}) from exc

        await self._record_event("outbound", payload, reply.status_code, None)

        if reply.text is None:
            logger.info("Message %s acknowledged; reply will arrive asynchronously", user_message.id)
            return DispatchReceipt(delivery="async", user_message=user_message)

        metadata: dict[str, Any] = {"ai_bridge_response": True}
        if reply.openai_thread_id:
            metadata["openai_thread_id"] = reply.openai_thread_id
        assistant_message = await self._store_reply(actor_id, reply.text, metadata=metadata)
        return DispatchReceipt(
            delivery="sync",
            user_message=user_message,
            assistant_message=assistant_message,
            response=reply.text,
        )

    async def receive_reply(self, callback: ProcessorCallback, secret: Optional[str] = None) -> MessageOut:
        """Persist a reply the processor delivered through the callback endpoint."""

        expected = get_settings().processor.callback_secret
        if expected and secret != expected:
            raise Unauthenticated("Invalid callback secret")

        payload = callback.model_dump(by_alias=True, exclude_none=True)
        text = callback.reply_text
        if text is None:
            await self._record_event("inbound", payload, 400, "missing reply text")
            raise InvalidRequest("UserId and resposta are required")

        profile = await get_profile(callback.user_id)
        if profile is None:
            await self._record_event("inbound", payload, 404, "unknown user")
            raise NotFound("User not found")

        metadata: dict[str, Any] = {"callback": True}
        if callback.openai_thread_id:
            metadata["openai_thread_id"] = callback.openai_thread_id
        if callback.client_id:
            metadata["reply_to"] = callback.client_id
        message = await self._store_reply(callback.user_id, text, metadata=metadata)
        if message is None:
            raise PersistenceFailed("Failed to save the assistant reply")
        await self._record_event("inbound", payload, 200, None)
        logger.info("Stored asynchronous reply %s for %s", message.id, callback.user_id)
        return message

    async def _store_reply(
        self,
        actor_id: str,
        text: str,
        *,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[MessageOut]:
        try:
            return await insert_message(
                actor_id,
                actor_id,
                Sender.ASSISTANT,
                text,
                MessageKind.TEXT,
                metadata=metadata,
            )
        except SQLAlchemyError:
            # The reply text still goes back to the caller; only the copy in the store is lost.
            logger.exception("Assistant message for %s could not be saved", actor_id)
            return None

    async def _record_event(
        self,
        direction: str,
        payload: dict[str, Any],
        status_code: Optional[int],
        error: Optional[str],
    ) -> None:
        try:
            db = await get_db_manager()
            async with db.session() as session:
                session.add(
                    WebhookEvent(direction=direction, payload=redact(payload), status_code=status_code, error=error)
                )
        except SQLAlchemyError:
            logger.exception("Failed to record %s webhook event", direction)


_gateway: DispatchGateway | None = None


async def get_dispatch_gateway() -> DispatchGateway:
    global _gateway
    if _gateway is None:
        _gateway = DispatchGateway(await get_processor_client())
    return _gateway


def reset_dispatch_gateway() -> None:
    global _gateway
    _gateway = None
