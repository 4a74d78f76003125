"""Watch remote job rows until they reach a terminal status.

Two sources of updates share one apply step (``apply_observed_row``): copy
the processor-owned fields into the local mirror, then publish a job event.
Mirror writes run in the threadpool so SQLite never blocks the event loop.

* ``JobPoller`` re-reads the row every ``poll_interval_seconds``. Read
  failures and malformed rows skip the tick. It stops on
  ``completed``/``failed`` or once ``max_watch_seconds`` have elapsed,
  whichever comes first.
* ``ChangeFeedWatcher`` subscribes to Supabase realtime UPDATEs for the row
  instead, under the same watch-duration cap. Once subscribed it reads the
  row once, so a job that finished before the subscription is still seen.

``JobWatcher`` prefers the change feed when enabled and falls back to
polling when the subscription cannot be established.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError
from supabase import AsyncClient

from app.config import settings
from app.errors import StoreReadError
from app.logging_config import job_context
from app.models.job import JobData, is_terminal, observed_fields
from app.services.job_events import JOB_EVENT_UPDATED, JobEvent, JobEventBus
from app.services.job_mirror import JobMirror
from app.services.job_store import SupabaseJobStore

logger = logging.getLogger(__name__)

# Why a watch ended
WATCH_TERMINAL = "terminal"
WATCH_TIMED_OUT = "timed_out"
WATCH_GONE = "gone"


async def apply_observed_row(
    job_id: str,
    row: dict[str, Any],
    mirror: JobMirror,
    events: JobEventBus,
) -> JobData | None:
    """Mirror the processor-owned fields of ``row`` and announce the change.

    Jobs missing from the mirror (e.g. created before a restart) are
    mirrored whole when the row carries enough columns to build a record.

    Raises:
        ValidationError: the row holds values that cannot be decoded, such
            as a prompt record without an id. Nothing is mirrored or published.
    """
    fields = observed_fields(row)
    job = await run_in_threadpool(mirror.merge_update, job_id, fields)
    if job is None and "template_id" in row:
        job = JobData.from_row(row)
        await run_in_threadpool(mirror.upsert, job)

    status = fields.get("status") or (job.status if job else None)
    progress = fields.get("progress") if "progress" in fields else (job.progress if job else None)
    events.publish(JobEvent(job_id, JOB_EVENT_UPDATED, status=status, progress=progress))
    return job


class _WatchRegistry:
    """Keeps at most one live watch task per job id."""

    def __init__(self) -> None:
        self._watches: dict[str, asyncio.Task] = {}

    def get(self, job_id: str) -> asyncio.Task | None:
        task = self._watches.get(job_id)
        if task is not None and not task.done():
            return task
        return None

    def add(self, job_id: str, task: asyncio.Task) -> None:
        self._watches[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._forget(jid, t))

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        if self._watches.get(job_id) is task:
            del self._watches[job_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Watch for job %s crashed",
                job_id,
                exc_info=task.exception(),
            )

    def active_job_ids(self) -> list[str]:
        return [jid for jid, task in self._watches.items() if not task.done()]

    def stop(self, job_id: str) -> bool:
        task = self.get(job_id)
        if task is None:
            return False
        task.cancel()
        return True

    async def stop_all(self) -> None:
        tasks = [t for t in self._watches.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class JobPoller:
    """Fixed-interval polling of the job store."""

    def __init__(
        self,
        store: SupabaseJobStore,
        mirror: JobMirror,
        events: JobEventBus,
        *,
        interval: float | None = None,
        max_watch: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._mirror = mirror
        self._events = events
        self.interval = settings.poll_interval_seconds if interval is None else interval
        self.max_watch = settings.max_watch_seconds if max_watch is None else max_watch
        self._clock = clock
        self._sleep = sleep
        self._registry = _WatchRegistry()

    def watch(self, job_id: str) -> asyncio.Task:
        """Start polling ``job_id``; an existing live watch is returned as-is."""
        existing = self._registry.get(job_id)
        if existing is not None:
            return existing
        task = asyncio.create_task(self._poll(job_id), name=f"poll-job-{job_id}")
        self._registry.add(job_id, task)
        return task

    def watch_task(self, job_id: str) -> asyncio.Task | None:
        """The live watch task for ``job_id``, if any."""
        return self._registry.get(job_id)

    def stop(self, job_id: str) -> bool:
        return self._registry.stop(job_id)

    async def stop_all(self) -> None:
        await self._registry.stop_all()

    def active_job_ids(self) -> list[str]:
        return self._registry.active_job_ids()

    async def _poll(self, job_id: str) -> str:
        started = self._clock()
        with job_context(job_id):
            logger.debug("Polling job %s every %.1fs", job_id, self.interval)
            while True:
                await self._sleep(self.interval)

                if self._clock() - started > self.max_watch:
                    logger.info(
                        "Stopped polling for job %s after reaching max watch time",
                        job_id,
                    )
                    return WATCH_TIMED_OUT

                try:
                    row = await self._store.fetch_job(job_id)
                except StoreReadError:
                    logger.warning("Error fetching job updates for %s", job_id, exc_info=True)
                    continue

                if row is None:
                    logger.info("Job %s no longer exists, stopped polling", job_id)
                    return WATCH_GONE

                try:
                    job = await apply_observed_row(job_id, row, self._mirror, self._events)
                except ValidationError:
                    logger.warning("Skipping malformed update for job %s", job_id, exc_info=True)
                    continue
                status = row.get("status") or (job.status if job else "")
                if is_terminal(status):
                    logger.info("Stopped polling for job %s as it is now %s", job_id, status)
                    return WATCH_TERMINAL


class ChangeFeedUnavailable(Exception):
    """The realtime subscription for a job could not be established."""


def _record_from_payload(payload: Any) -> dict[str, Any] | None:
    """Pull the new row out of a postgres_changes payload (either shape)."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data", payload)
    record = data.get("record") or data.get("new")
    return record if isinstance(record, dict) else None


class ChangeFeedWatcher:
    """Push-based watching through Supabase realtime ``postgres_changes``."""

    def __init__(
        self,
        store: SupabaseJobStore,
        mirror: JobMirror,
        events: JobEventBus,
        *,
        client_factory: Callable[[], Awaitable[AsyncClient]] | None = None,
        table: str | None = None,
        max_watch: float | None = None,
        subscribe_timeout: float = 10.0,
    ) -> None:
        if client_factory is None:
            from app.db.supabase_client import get_supabase

            client_factory = get_supabase
        self._client_factory = client_factory
        self._store = store
        self._mirror = mirror
        self._events = events
        self._table = table or settings.jobs_table
        self.max_watch = settings.max_watch_seconds if max_watch is None else max_watch
        self._subscribe_timeout = subscribe_timeout
        self._registry = _WatchRegistry()

    async def watch(self, job_id: str) -> asyncio.Task:
        """Subscribe to changes of ``job_id``.

        Raises:
            ChangeFeedUnavailable: the channel did not reach SUBSCRIBED.
        """
        existing = self._registry.get(job_id)
        if existing is not None:
            return existing

        loop = asyncio.get_running_loop()
        changes: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        subscribed: asyncio.Future = loop.create_future()

        def _on_change(payload: Any) -> None:
            row = _record_from_payload(payload)
            if row is not None:
                changes.put_nowait(row)

        def _on_status(state: Any, error: Exception | None = None) -> None:
            if subscribed.done():
                return
            if str(getattr(state, "value", state)) == "SUBSCRIBED":
                subscribed.set_result(True)
            else:
                subscribed.set_exception(
                    ChangeFeedUnavailable(f"channel state {state}: {error}")
                )

        client = channel = None
        try:
            client = await self._client_factory()
            channel = client.channel(f"job-{job_id}")
            channel.on_postgres_changes(
                "UPDATE",
                schema="public",
                table=self._table,
                filter=f"id=eq.{job_id}",
                callback=_on_change,
            )
            await channel.subscribe(_on_status)
            await asyncio.wait_for(subscribed, timeout=self._subscribe_timeout)
        except ChangeFeedUnavailable:
            await self._discard(job_id, client, channel)
            raise
        except Exception as exc:
            await self._discard(job_id, client, channel)
            raise ChangeFeedUnavailable(str(exc) or type(exc).__name__) from exc

        task = asyncio.create_task(
            self._hold(job_id, client, channel, changes),
            name=f"feed-job-{job_id}",
        )
        self._registry.add(job_id, task)
        logger.info("Subscribed to change feed for job %s", job_id)
        return task

    async def _hold(
        self,
        job_id: str,
        client: AsyncClient,
        channel: Any,
        changes: asyncio.Queue,
    ) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_watch
        with job_context(job_id):
            try:
                # Writes made before SUBSCRIBED never arrive on the channel
                try:
                    row = await self._store.fetch_job(job_id)
                except StoreReadError:
                    logger.warning("Error fetching current state of job %s", job_id, exc_info=True)
                else:
                    if row is None:
                        logger.info("Job %s no longer exists, closing change feed", job_id)
                        return WATCH_GONE
                    if await self._observe(job_id, row):
                        return WATCH_TERMINAL

                while True:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    row = await asyncio.wait_for(changes.get(), timeout=remaining)
                    if await self._observe(job_id, row):
                        return WATCH_TERMINAL
            except asyncio.TimeoutError:
                logger.info("Change feed for job %s reached max watch time", job_id)
                return WATCH_TIMED_OUT
            finally:
                await self._discard(job_id, client, channel)

    async def _observe(self, job_id: str, row: dict[str, Any]) -> bool:
        """Apply one observed row; True once the job is terminal."""
        try:
            await apply_observed_row(job_id, row, self._mirror, self._events)
        except ValidationError:
            logger.warning("Skipping malformed update for job %s", job_id, exc_info=True)
            return False
        return is_terminal(row.get("status", ""))

    async def _discard(self, job_id: str, client: Any, channel: Any) -> None:
        if client is None or channel is None:
            return
        try:
            await client.remove_channel(channel)
        except Exception:
            logger.warning("Could not remove channel for job %s", job_id, exc_info=True)

    def watch_task(self, job_id: str) -> asyncio.Task | None:
        """The live watch task for ``job_id``, if any."""
        return self._registry.get(job_id)

    def stop(self, job_id: str) -> bool:
        return self._registry.stop(job_id)

    async def stop_all(self) -> None:
        await self._registry.stop_all()

    def active_job_ids(self) -> list[str]:
        return self._registry.active_job_ids()


class JobWatcher:
    """Chooses between the change feed and polling for each watch."""

    def __init__(
        self,
        poller: JobPoller,
        change_feed: ChangeFeedWatcher | None = None,
    ) -> None:
        self.poller = poller
        self.change_feed = change_feed

    async def watch(self, job_id: str) -> asyncio.Task:
        if self.change_feed is not None:
            try:
                return await self.change_feed.watch(job_id)
            except ChangeFeedUnavailable as exc:
                logger.warning(
                    "Change feed unavailable for job %s, falling back to polling: %s",
                    job_id,
                    exc,
                )
        return self.poller.watch(job_id)

    def stop(self, job_id: str) -> bool:
        stopped = self.poller.stop(job_id)
        if self.change_feed is not None:
            stopped = self.change_feed.stop(job_id) or stopped
        return stopped

    async def stop_all(self) -> None:
        await self.poller.stop_all()
        if self.change_feed is not None:
            await self.change_feed.stop_all()

    def active_job_ids(self) -> list[str]:
        ids = self.poller.active_job_ids()
        if self.change_feed is not None:
            ids += self.change_feed.active_job_ids()
        return ids
