"""WebSocket endpoint pushing message inserts for the caller's thread."""

from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ..auth import actor_from_token
from ..errors import Unauthenticated
from ..schemas import MessageOut
from ..services.realtime import SubscriptionStatus, get_notifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["realtime"])


@router.websocket("/messages")
async def message_socket(socket: WebSocket) -> None:
    """Stream ``insert`` frames for every message committed to the actor's thread.

    Browsers cannot set headers on WebSocket requests, so the access token
    travels in the ``token`` query parameter.
    """

    try:
        actor_id = actor_from_token(socket.query_params.get("token", ""))
    except Unauthenticated:
        await socket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await socket.accept()

    async def push_insert(message: MessageOut) -> None:
        await socket.send_json({"type": "insert", "message": message.model_dump(mode="json")})

    notifier = get_notifier()
    subscription = notifier.subscribe(actor_id, push_insert)
    try:
        await socket.send_json({"type": "status", "status": SubscriptionStatus.SUBSCRIBED.value})
        while True:
            frame = await socket.receive_text()
            if frame == "ping":
                await socket.send_text("pong")
    except WebSocketDisconnect:
        logger.debug("Realtime socket for %s disconnected", actor_id)
    finally:
        notifier.unsubscribe(subscription)
