"""Thread history and entitlement endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..auth import get_current_actor
from ..schemas import MessageOut, ProfileOut
from ..services.messages import list_thread_messages
from ..services.profiles import get_profile, serialize_profile

router = APIRouter(prefix="/api", tags=["messages"])


@router.get("/messages")
async def list_messages(actor_id: str = Depends(get_current_actor)) -> list[MessageOut]:
    """Return the actor's thread, oldest first."""

    return await list_thread_messages(actor_id)


@router.get("/profile")
async def read_profile(actor_id: str = Depends(get_current_actor)) -> ProfileOut:
    profile = await get_profile(actor_id)
    if profile is None:
        return ProfileOut(user_id=actor_id, subscription_active=False)
    return serialize_profile(profile)
