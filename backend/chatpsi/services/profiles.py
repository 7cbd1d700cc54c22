"""Identity and entitlement lookups backed by the ``profiles`` table."""

from __future__ import annotations

from typing import Optional

from ..schemas import ProfileOut
from ..storage import Profile, get_db_manager


def serialize_profile(profile: Profile) -> ProfileOut:
    return ProfileOut(
        user_id=profile.user_id,
        nickname=profile.nickname,
        subscription_active=bool(profile.subscription_active),
    )


async def get_profile(user_id: str) -> Optional[Profile]:
    db = await get_db_manager()
    async with db.session() as session:
        return await session.get(Profile, user_id)


async def upsert_profile(
    user_id: str,
    *,
    subscription_active: bool,
    nickname: Optional[str] = None,
    openai_thread_id: Optional[str] = None,
) -> Profile:
    db = await get_db_manager()
    async with db.session() as session:
        profile = await session.get(Profile, user_id)
        if profile is None:
            profile = Profile(user_id=user_id)
            session.add(profile)
        profile.subscription_active = subscription_active
        if nickname is not None:
            profile.nickname = nickname
        if openai_thread_id is not None:
            profile.openai_thread_id = openai_thread_id
        await session.flush()
        await session.refresh(profile)
        return profile
