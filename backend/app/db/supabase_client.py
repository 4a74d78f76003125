"""Shared async Supabase clients.

``get_supabase`` uses the service-role key: the backend filters by owner
itself, so row-level security is not relied upon. ``get_supabase_auth``
uses the anon key and is only used to validate user JWTs.
"""

from supabase import AsyncClient, acreate_client

from app.config import settings

_client: AsyncClient | None = None
_auth_client: AsyncClient | None = None


async def get_supabase() -> AsyncClient:
    """Get or create the service-role Supabase client."""
    global _client
    if _client is None:
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set"
            )
        _client = await acreate_client(
            settings.supabase_url,
            settings.supabase_service_role_key,
        )
    return _client


async def get_supabase_auth() -> AsyncClient:
    """Get or create the anon-key client used for token validation."""
    global _auth_client
    if _auth_client is None:
        if not settings.supabase_url or not settings.supabase_anon_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
        _auth_client = await acreate_client(
            settings.supabase_url,
            settings.supabase_anon_key,
        )
    return _auth_client
