"""Persistent job store backed by the Supabase ``jobs`` table.

The store speaks plain row dicts (snake_case columns). Every Supabase or
transport failure is re-raised as ``StoreReadError`` / ``StoreWriteError`` so
callers can choose between a mirror fallback and surfacing the error.
"""

import logging
from typing import Any, Awaitable, Callable

from supabase import AsyncClient

from app.config import settings
from app.errors import StoreReadError, StoreWriteError

logger = logging.getLogger(__name__)


class SupabaseJobStore:
    """Row-level access to the remote ``jobs`` and ``templates`` tables."""

    def __init__(
        self,
        client: AsyncClient | None = None,
        *,
        client_factory: Callable[[], Awaitable[AsyncClient]] | None = None,
        jobs_table: str | None = None,
        templates_table: str | None = None,
    ) -> None:
        if client_factory is None:
            from app.db.supabase_client import get_supabase

            client_factory = get_supabase
        self._client = client
        self._client_factory = client_factory
        self._jobs_table = jobs_table or settings.jobs_table
        self._templates_table = templates_table or settings.templates_table

    async def _get_client(self) -> AsyncClient:
        if self._client is None:
            self._client = await self._client_factory()
        return self._client

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def insert_job(self, row: dict[str, Any]) -> None:
        try:
            client = await self._get_client()
            await client.table(self._jobs_table).insert(row).execute()
        except Exception as exc:
            raise StoreWriteError(f"Could not save job {row.get('id')}: {exc}") from exc
        logger.debug("Inserted job row %s", row.get("id"))

    async def fetch_job(self, job_id: str) -> dict[str, Any] | None:
        """Return the row for ``job_id``, or ``None`` if there is none."""
        try:
            client = await self._get_client()
            resp = (
                await client.table(self._jobs_table)
                .select("*")
                .eq("id", job_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise StoreReadError(f"Could not read job {job_id}: {exc}") from exc
        rows = resp.data or []
        return rows[0] if rows else None

    async def update_job(self, job_id: str, fields: dict[str, Any]) -> None:
        try:
            client = await self._get_client()
            await client.table(self._jobs_table).update(fields).eq("id", job_id).execute()
        except Exception as exc:
            raise StoreWriteError(f"Could not update job {job_id}: {exc}") from exc

    async def delete_job(self, job_id: str) -> None:
        try:
            client = await self._get_client()
            await client.table(self._jobs_table).delete().eq("id", job_id).execute()
        except Exception as exc:
            raise StoreWriteError(f"Could not delete job {job_id}: {exc}") from exc

    async def list_jobs(
        self,
        *,
        user_id: str | None = None,
        template_id: str | None = None,
        ascending: bool = False,
    ) -> list[dict[str, Any]]:
        """List job rows ordered by ``created_at`` (newest first by default)."""
        try:
            client = await self._get_client()
            query = client.table(self._jobs_table).select("*")
            if user_id is not None:
                query = query.eq("user_id", user_id)
            if template_id is not None:
                query = query.eq("template_id", template_id)
            resp = await query.order("created_at", desc=not ascending).execute()
        except Exception as exc:
            raise StoreReadError(f"Could not list jobs: {exc}") from exc
        return list(resp.data or [])

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def fetch_template(self, template_id: str) -> dict[str, Any] | None:
        """Return ``description`` and ``thumbnail_url`` for a template."""
        try:
            client = await self._get_client()
            resp = (
                await client.table(self._templates_table)
                .select("description, thumbnail_url")
                .eq("id", template_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise StoreReadError(f"Could not read template {template_id}: {exc}") from exc
        rows = resp.data or []
        return rows[0] if rows else None
