"""Message store: durable, thread-ordered log of chat messages."""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import or_, select, update

from ..schemas import MessageKind, MessageOut, Sender
from ..storage import Message, get_db_manager
from .realtime import get_notifier

logger = logging.getLogger(__name__)


def serialize_message(message: Message) -> MessageOut:
    return MessageOut(
        id=message.id,
        thread_id=message.thread_id,
        user_id=message.user_id,
        sender=Sender(message.sender),
        content=message.content,
        type=MessageKind(message.type),
        media_url=message.media_url,
        client_id=message.client_id,
        created_at=message.created_at,
    )


async def insert_message(
    thread_id: str,
    user_id: str,
    sender: Sender,
    content: str,
    kind: MessageKind = MessageKind.TEXT,
    *,
    media_url: Optional[str] = None,
    client_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> MessageOut:
    """Persist one message and notify realtime subscribers once it is committed."""

    db = await get_db_manager()
    async with db.session() as session:
        message = Message(
            thread_id=thread_id,
            user_id=user_id,
            sender=sender.value,
            content=content,
            type=kind.value,
            media_url=media_url,
            client_id=client_id,
            extra=metadata or None,
        )
        session.add(message)
        await session.flush()
        await session.refresh(message)
        stored = serialize_message(message)

    logger.debug("Stored %s message %s in thread %s", sender.value, stored.id, thread_id)
    await get_notifier().publish(stored)
    return stored


async def list_thread_messages(thread_id: str) -> list[MessageOut]:
    """Non-deleted messages of a thread, oldest first, ties in insertion order."""

    db = await get_db_manager()
    async with db.session() as session:
        result = await session.execute(
            select(Message)
            .where(Message.thread_id == thread_id)
            .where(or_(Message.is_deleted.is_(False), Message.is_deleted.is_(None)))
            .order_by(Message.created_at, Message.seq)
        )
        rows = result.scalars().all()
    return [serialize_message(row) for row in rows]


async def soft_delete_message(message_id: str) -> bool:
    db = await get_db_manager()
    async with db.session() as session:
        result = await session.execute(update(Message).where(Message.id == message_id).values(is_deleted=True))
        return result.rowcount > 0
