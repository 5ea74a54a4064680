"""Access tokens: HS256, signed with ``CROLARS_JWT_SECRET``.

Tokens are minted by the platform's auth service; this service verifies them
on every REST call and on the ``/ws`` handshake. ``create_access_token`` is
kept for service-to-service calls and tests.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from crolars.config import get_settings


def create_access_token(user_id: int, username: str, *, is_admin: bool = False) -> str:
    settings = get_settings()
    issued = datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "username": username,
        "admin": is_admin,
        "type": "access",
        "iss": settings.jwt_issuer,
        "iat": issued,
        "exp": issued + timedelta(minutes=settings.jwt_access_token_expire_minutes),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str, expected_type: str = "access") -> dict[str, Any]:
    """Decode ``token`` and check issuer, expiry and token type.

    Every failure surfaces as ``jwt.InvalidTokenError``; the message says
    which check failed.
    """
    settings = get_settings()
    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["sub", "exp", "iss"]},
        )
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise jwt.InvalidTokenError(msg) from None

    token_type = claims.get("type")
    if token_type != expected_type:
        msg = f"Expected a {expected_type} token, got {token_type!r}"
        raise jwt.InvalidTokenError(msg)
    return claims
