"""Google OAuth token endpoint calls used by the Drive session.

Only the refresh-token grant lives here; obtaining the initial consent is
done by the frontend.
"""

import httpx

from app.config import settings

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


async def refresh_access_token(refresh_token: str) -> dict:
    """Use ``refresh_token`` to get a new access token from Google.

    Returns the token response (``access_token``, ``expires_in``, ...).
    """
    async with httpx.AsyncClient() as client:
        resp = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        resp.raise_for_status()
        return resp.json()
