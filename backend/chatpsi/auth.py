"""Bearer-token verification for identity-provider access tokens.

The actor id is always taken from the verified ``sub`` claim, never from a
request body.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from uuid import UUID

import jwt
from fastapi import Header
from jwt.exceptions import InvalidTokenError

from .config import get_settings
from .errors import Unauthenticated

logger = logging.getLogger(__name__)

# Clock skew allowance in seconds
CLOCK_SKEW_SECONDS = 60


def verify_token(token: str) -> dict[str, Any]:
    """Verify signature, expiry and audience; return the decoded claims.

    Raises:
        Unauthenticated: Token is missing, invalid, expired, or has no UUID subject.
    """
    if not token:
        raise Unauthenticated("Authentication token required")

    settings = get_settings().auth
    options = {"require": ["sub", "exp"], "verify_aud": settings.audience is not None}
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.algorithm],
            audience=settings.audience,
            leeway=CLOCK_SKEW_SECONDS,
            options=options,
        )
    except InvalidTokenError as exc:
        logger.debug("Token rejected: %s", exc)
        raise Unauthenticated("Invalid authentication token") from exc

    try:
        UUID(str(claims["sub"]))
    except ValueError as exc:
        raise Unauthenticated("Token subject must be a UUID") from exc
    return claims


def actor_from_token(token: str) -> str:
    return str(verify_token(token)["sub"])


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        return ""
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return value.strip()


async def get_current_actor(authorization: Optional[str] = Header(default=None)) -> str:
    """FastAPI dependency yielding the authenticated actor id."""

    return actor_from_token(bearer_token(authorization))
