"""Send and reply-callback endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from ..auth import bearer_token, get_current_actor
from ..schemas import DispatchReceipt, DispatchRequest, ProcessorCallback
from ..services.dispatch import get_dispatch_gateway

router = APIRouter(prefix="/api", tags=["dispatch"])


@router.post("/dispatch")
async def dispatch_message(
    request: DispatchRequest,
    actor_id: str = Depends(get_current_actor),
) -> DispatchReceipt:
    """Persist the actor's message and forward it to the processor."""

    gateway = await get_dispatch_gateway()
    return await gateway.dispatch(actor_id, request)


@router.post("/webhook/response")
async def receive_webhook_response(
    callback: ProcessorCallback,
    authorization: Optional[str] = Header(default=None),
    x_webhook_secret: Optional[str] = Header(default=None),
) -> dict[str, object]:
    """Store a reply the processor delivers after the send returned."""

    gateway = await get_dispatch_gateway()
    message = await gateway.receive_reply(callback, secret=x_webhook_secret or bearer_token(authorization) or None)
    return {"success": True, "message": "AI response received and saved", "message_id": message.id}
