"""Shared helpers for ChatPsi tests."""

from __future__ import annotations

import functools
import time

import jwt
from fastapi.testclient import TestClient

from chatpsi.services.profiles import upsert_profile

TEST_JWT_SECRET = "chatpsi-test-secret-0123456789abcdef"
PROCESSOR_URL = "https://processor.test/webhook/chatprincipal"


def make_token(user_id: str, *, expires_in: int = 3600, audience: str = "authenticated", secret: str | None = None) -> str:
    """Mint an access token the way the identity provider would."""
    claims = {"sub": user_id, "aud": audience, "exp": int(time.time()) + expires_in}
    return jwt.encode(claims, secret or TEST_JWT_SECRET, algorithm="HS256")


def auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def seed_profile(client: TestClient, user_id: str, *, subscription_active: bool = True, nickname: str | None = None) -> None:
    """Create a profile on the app's own event loop."""
    client.portal.call(
        functools.partial(upsert_profile, user_id, subscription_active=subscription_active, nickname=nickname)
    )
