"""Google Drive credentials for one user, passed explicitly to Drive calls.

A ``DriveSession`` replaces a process-wide token cache: whoever needs Drive
access is handed the session object, and its lifecycle is driven through
``acquire`` / ``refresh`` / ``invalidate``.
"""

import logging
import time
from typing import Awaitable, Callable

import httpx

from app.auth.google import refresh_access_token
from app.errors import DriveAuthError

logger = logging.getLogger(__name__)

# Treat tokens this close to expiry as already expired
EXPIRY_SKEW_SECONDS = 60.0


class DriveSession:
    """Access token plus optional refresh token and expiry."""

    def __init__(
        self,
        access_token: str | None = None,
        *,
        expires_at: float | None = None,
        refresh_token: str | None = None,
        clock: Callable[[], float] = time.time,
        refresher: Callable[[str], Awaitable[dict]] = refresh_access_token,
    ) -> None:
        self._access_token = access_token
        self._expires_at = expires_at
        self._refresh_token = refresh_token
        self._clock = clock
        self._refresher = refresher

    @classmethod
    def from_token_response(cls, data: dict, **kwargs) -> "DriveSession":
        """Build a session from an OAuth token response."""
        session = cls(refresh_token=data.get("refresh_token"), **kwargs)
        session._store(data)
        return session

    def _store(self, data: dict) -> None:
        self._access_token = data["access_token"]
        expires_in = data.get("expires_in")
        self._expires_at = self._clock() + float(expires_in) if expires_in else None
        if data.get("refresh_token"):
            self._refresh_token = data["refresh_token"]

    @property
    def is_authenticated(self) -> bool:
        if not self._access_token:
            return False
        if self._expires_at is None:
            return True
        return self._expires_at - EXPIRY_SKEW_SECONDS > self._clock()

    async def acquire(self) -> str:
        """Return a usable access token, refreshing it first if needed.

        Raises:
            DriveAuthError: no valid token and no way to refresh one.
        """
        if self.is_authenticated:
            return self._access_token  # type: ignore[return-value]
        await self.refresh()
        return self._access_token  # type: ignore[return-value]

    async def refresh(self) -> None:
        if not self._refresh_token:
            self.invalidate()
            raise DriveAuthError("Not authenticated with Google Drive")
        try:
            data = await self._refresher(self._refresh_token)
            self._store(data)
        except (httpx.HTTPError, KeyError) as exc:
            self.invalidate()
            raise DriveAuthError(f"Google Drive token refresh failed: {exc}") from exc
        logger.info("Google Drive access token refreshed")

    def invalidate(self) -> None:
        """Forget the access token; the refresh token survives for ``refresh``."""
        self._access_token = None
        self._expires_at = None
