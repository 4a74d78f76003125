"""Supabase JWT validation dependencies for FastAPI."""

import logging

from fastapi import Header, HTTPException

from app.db.supabase_client import get_supabase_auth
from app.services.job_service import AuthUser

logger = logging.getLogger(__name__)


async def get_optional_user(authorization: str | None = Header(None)) -> AuthUser | None:
    """Resolve ``Authorization: Bearer <jwt>`` to a user, or None.

    A missing header yields None; a header that is present but invalid is
    rejected with 401 rather than silently treated as anonymous.
    """
    if not authorization:
        return None
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid token")

    token = authorization.removeprefix("Bearer ")
    try:
        client = await get_supabase_auth()
        user_response = await client.auth.get_user(token)
    except Exception:
        logger.warning("Supabase token validation failed", exc_info=True)
        raise HTTPException(status_code=401, detail="Invalid token")

    user = user_response.user if user_response else None
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return AuthUser(id=str(user.id), email=getattr(user, "email", None))


async def get_current_user(authorization: str | None = Header(None)) -> AuthUser:
    """Like ``get_optional_user`` but a missing token is a 401 as well."""
    user = await get_optional_user(authorization)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user
