"""
core/auth.py — Actor Tokens
============================
Who is calling. The surrounding identity service issues signed JWTs that
carry the user id, an opaque role token and the user's sub-city scope.
The core never looks anything up by itself: routes decode the token into an
`Actor` and pass it explicitly to every operation.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from config import settings

logger = logging.getLogger("cadastre.auth")


class Actor(BaseModel):
    user_id: str
    role: str                         # SUBCITY_NORMAL | SUBCITY_AUDITOR | SUBCITY_ADMIN | CITY_ADMIN | ...
    sub_city_id: Optional[str] = None


def create_access_token(actor: Actor, expires_minutes: Optional[int] = None) -> str:
    """Create a signed JWT for an actor. Used by tests and the admin tooling."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": actor.user_id,
        "role": actor.role,
        "sub_city_id": actor.sub_city_id,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes or settings.JWT_EXPIRY_MINUTES),
    }
    token = jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    logger.debug(f"Issued token for {actor.user_id} ({actor.role})")
    return token


def decode_access_token(token: str) -> Actor:
    """Verify and decode a JWT. Raises JWTError if invalid/expired or incomplete."""
    claims = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if not claims.get("sub") or not claims.get("role"):
        raise JWTError("Token is missing subject or role")
    return Actor(
        user_id=claims["sub"],
        role=claims["role"],
        sub_city_id=claims.get("sub_city_id"),
    )
