"""Job service - creates, reads and deletes carousel generation jobs.

Writes go to the remote store first; the local mirror is only touched once
the remote write has succeeded. Reads prefer the store and fall back to the
mirror when the store is unreachable.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi.concurrency import run_in_threadpool

from app.config import settings
from app.errors import (
    AuthenticationRequired,
    JobValidationError,
    StoreError,
    StoreReadError,
    TriggerInvocationError,
)
from app.logging_config import job_context
from app.models.job import (
    JOB_STATUS_FAILED,
    JOB_STATUS_QUEUED,
    VALID_DATA_TYPES,
    JobData,
    utcnow,
)
from app.services.data_sources import normalize_data_content
from app.services.job_events import (
    JOB_EVENT_CREATED,
    JOB_EVENT_DELETED,
    JOB_EVENT_FAILED,
    JobEvent,
    JobEventBus,
)
from app.services.job_mirror import JobMirror
from app.services.job_poller import JobWatcher
from app.services.job_processor import JobProcessorClient
from app.services.job_store import SupabaseJobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthUser:
    """The authenticated principal a job belongs to."""

    id: str
    email: str | None = None


class JobService:
    """Lifecycle operations for carousel generation jobs."""

    def __init__(
        self,
        store: SupabaseJobStore,
        mirror: JobMirror,
        events: JobEventBus,
        processor: JobProcessorClient,
        watcher: JobWatcher,
        *,
        trigger_delay: float | None = None,
    ) -> None:
        self.store = store
        self.mirror = mirror
        self.events = events
        self.processor = processor
        self.watcher = watcher
        self.trigger_delay = (
            settings.trigger_delay_seconds if trigger_delay is None else trigger_delay
        )
        # Strong references so pending triggers are not garbage-collected
        self._pending: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_job(
        self,
        user: AuthUser | None,
        name: str,
        template_id: str,
        template_name: str,
        variants: int,
        data_type: str,
        data_content: list[dict[str, Any]] | str,
    ) -> str:
        """Create a job in QUEUED state and schedule its processing.

        Returns the new job id without waiting for processing to start.

        Raises:
            AuthenticationRequired: ``user`` is None.
            JobValidationError: the input is malformed.
            StoreWriteError: the remote insert failed; nothing was mirrored.
        """
        if user is None:
            raise AuthenticationRequired()
        if not name or not name.strip():
            raise JobValidationError("Job name is required")
        if not template_id:
            raise JobValidationError("Template is required")
        if variants < 1:
            raise JobValidationError("Variant count must be at least 1")
        if data_type not in VALID_DATA_TYPES:
            raise JobValidationError(f"Unknown data type: {data_type!r}")
        data_content = normalize_data_content(data_type, data_content)

        template_description = ""
        template_image_url = ""
        try:
            template = await self.store.fetch_template(template_id)
        except StoreReadError:
            logger.warning("Error fetching template details for %s", template_id, exc_info=True)
            template = None
        if template:
            template_description = template.get("description") or ""
            template_image_url = template.get("thumbnail_url") or ""

        now = utcnow()
        job = JobData(
            id=uuid.uuid4().hex,
            name=name.strip(),
            template_id=template_id,
            template_name=template_name,
            template_description=template_description,
            template_image_url=template_image_url,
            status=JOB_STATUS_QUEUED,
            progress=0,
            variants=variants,
            data_type=data_type,
            data_content=data_content,
            created_at=now,
            updated_at=now,
            user_id=user.id,
        )

        await self.store.insert_job(job.to_row())
        await run_in_threadpool(self.mirror.upsert, job)
        self.events.publish(
            JobEvent(job.id, JOB_EVENT_CREATED, status=job.status, progress=job.progress)
        )
        logger.info(
            "Created job %s for template %s",
            job.id,
            template_id,
            extra={"job_id": job.id, "variants": variants, "data_type": data_type},
        )

        self._schedule(self._deferred_process(job.id))
        return job.id

    def _schedule(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deferred_process(self, job_id: str) -> None:
        if self.trigger_delay > 0:
            await asyncio.sleep(self.trigger_delay)
        try:
            await self.process_job(job_id)
        except Exception:
            logger.exception("Unexpected error processing job %s", job_id)

    async def drain(self) -> None:
        """Wait for scheduled processor triggers (used at shutdown and in tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Process
    # ------------------------------------------------------------------

    async def process_job(self, job_id: str) -> bool:
        """Invoke the remote processor for a job and start watching it.

        Returns False (after marking the job failed) when the job could not
        be read or the processor could not be invoked. There is no retry.
        """
        with job_context(job_id):
            try:
                row = await self.store.fetch_job(job_id)
                if row is None:
                    raise StoreReadError(f"Job {job_id} not found")
                job = JobData.from_row(row)
                await self.processor.invoke(job)
            except (StoreError, TriggerInvocationError) as exc:
                logger.error("Error invoking processor for job %s: %s", job_id, exc)
                await self._mark_failed(job_id, f"Failed to start processing: {exc}")
                return False

            await self.watcher.watch(job_id)
            return True

    async def _mark_failed(self, job_id: str, message: str) -> None:
        now = utcnow()
        try:
            await self.store.update_job(
                job_id,
                {"status": JOB_STATUS_FAILED, "message": message, "updated_at": now.isoformat()},
            )
        except StoreError:
            logger.exception("Could not mark job %s as failed", job_id)
        await run_in_threadpool(
            self.mirror.merge_update,
            job_id,
            {"status": JOB_STATUS_FAILED, "message": message, "updated_at": now},
        )
        self.events.publish(JobEvent(job_id, JOB_EVENT_FAILED, status=JOB_STATUS_FAILED))

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> JobData | None:
        """Fetch a job, falling back to the mirror when the store is down."""
        try:
            row = await self.store.fetch_job(job_id)
        except StoreReadError:
            logger.warning("Falling back to mirror for job %s", job_id, exc_info=True)
            return await run_in_threadpool(self.mirror.get_by_id, job_id)
        if row is None:
            return None
        job = JobData.from_row(row)
        await run_in_threadpool(self.mirror.upsert, job)
        return job

    async def get_all_jobs(self, user: AuthUser | None = None) -> list[JobData]:
        """List jobs newest-first and refresh the mirror with the result."""
        user_id = user.id if user else None
        try:
            rows = await self.store.list_jobs(user_id=user_id)
        except StoreReadError:
            logger.warning("Falling back to mirror for job list", exc_info=True)
            return await run_in_threadpool(self.mirror.get_all, user_id)
        jobs = [JobData.from_row(r) for r in rows]
        await run_in_threadpool(self.mirror.replace_all, jobs, user_id=user_id)
        return jobs

    async def get_jobs_by_template(
        self, template_id: str, user: AuthUser | None = None
    ) -> list[JobData]:
        user_id = user.id if user else None
        try:
            rows = await self.store.list_jobs(user_id=user_id, template_id=template_id)
        except StoreReadError:
            logger.warning("Falling back to mirror for template %s jobs", template_id, exc_info=True)
            return await run_in_threadpool(self.mirror.get_by_template, template_id, user_id)
        return [JobData.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_job(self, job_id: str) -> None:
        """Delete a job remotely, then locally.

        Raises:
            StoreWriteError: the remote delete failed; the mirror is untouched.
        """
        await self.store.delete_job(job_id)
        self.watcher.stop(job_id)
        await run_in_threadpool(self.mirror.delete, job_id)
        self.events.publish(JobEvent(job_id, JOB_EVENT_DELETED))
        logger.info("Deleted job %s", job_id)


_job_service: JobService | None = None


def get_job_service() -> JobService:
    """Return the module-level JobService, wiring default collaborators."""
    global _job_service
    if _job_service is None:
        from app.services.job_events import get_event_bus
        from app.services.job_poller import ChangeFeedWatcher, JobPoller

        store = SupabaseJobStore()
        mirror = JobMirror()
        events = get_event_bus()
        poller = JobPoller(store, mirror, events)
        change_feed = ChangeFeedWatcher(store, mirror, events) if settings.realtime_enabled else None
        _job_service = JobService(
            store,
            mirror,
            events,
            JobProcessorClient(),
            JobWatcher(poller, change_feed),
        )
    return _job_service
