"""Bearer-token dependencies for player and admin routes."""

from __future__ import annotations

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from crolars.auth.jwt import verify_token
from crolars.database import get_session
from crolars.db.models import User

_bearer = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> User:
    """Resolve the token's subject to a ``User`` row.

    An invalid token or an unknown subject is 401. Banned players keep a valid
    token but are refused every wallet, XP and notification route with 403.
    """
    try:
        claims = verify_token(credentials.credentials, expected_type="access")
        user_id = int(claims["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError) as e:
        raise HTTPException(status_code=401, detail=f"Invalid access token: {e}") from e

    user = await db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    if user.is_banned:
        raise HTTPException(status_code=403, detail="Account is banned")
    return user


async def get_admin_user(user: User = Depends(get_current_user)) -> User:
    """Admin routes (minting, XP grants, badge catalog, broadcasts) check the DB flag, not the token claim."""
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return user
