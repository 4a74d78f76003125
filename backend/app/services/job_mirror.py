"""Local mirror of job records.

A best-effort shadow of the remote ``jobs`` table, used as the fallback read
path when the store is unreachable and as the immediate read-after-create
source. Records are keyed by job id, so every write touches one row only.

The mirror is never authoritative: it can always be rebuilt from the store.
Writes are last-write-wins unless the caller passes ``expected_version``.
"""

import logging
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.errors import MirrorConflictError
from app.models.job import JobData, utcnow
from app.models.mirror import MirroredJob

logger = logging.getLogger(__name__)


class JobMirror:
    """Indexed read/write access to mirrored job records."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        if session_factory is None:
            from app.database import get_db

            session_factory = get_db
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_all(self, user_id: str | None = None) -> list[JobData]:
        """Return mirrored jobs newest-first, optionally for one owner."""
        db = self._session_factory()
        try:
            q = db.query(MirroredJob)
            if user_id is not None:
                q = q.filter(MirroredJob.user_id == user_id)
            rows = q.order_by(MirroredJob.created_at.desc()).all()
            return [JobData.model_validate(r.payload) for r in rows]
        finally:
            db.close()

    def get_by_id(self, job_id: str) -> JobData | None:
        db = self._session_factory()
        try:
            row = db.get(MirroredJob, job_id)
            return JobData.model_validate(row.payload) if row else None
        finally:
            db.close()

    def get_by_template(self, template_id: str, user_id: str | None = None) -> list[JobData]:
        db = self._session_factory()
        try:
            q = db.query(MirroredJob).filter(MirroredJob.template_id == template_id)
            if user_id is not None:
                q = q.filter(MirroredJob.user_id == user_id)
            rows = q.order_by(MirroredJob.created_at.desc()).all()
            return [JobData.model_validate(r.payload) for r in rows]
        finally:
            db.close()

    def version_of(self, job_id: str) -> int | None:
        db = self._session_factory()
        try:
            row = db.get(MirroredJob, job_id)
            return row.version if row else None
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def upsert(self, job: JobData, *, expected_version: int | None = None) -> int:
        """Insert or replace the record for ``job.id`` and return its new version.

        Raises:
            MirrorConflictError: ``expected_version`` was given and the stored
                record is at a different version (0 means "must not exist").
        """
        db = self._session_factory()
        try:
            row = db.get(MirroredJob, job.id)
            current = row.version if row else 0
            if expected_version is not None and expected_version != current:
                raise MirrorConflictError(job.id, expected_version, current)

            payload = job.model_dump(mode="json")
            if row is None:
                row = MirroredJob(
                    job_id=job.id,
                    user_id=job.user_id,
                    template_id=job.template_id,
                    created_at=job.created_at,
                    payload=payload,
                    version=1,
                    mirrored_at=utcnow(),
                )
                db.add(row)
            else:
                row.user_id = job.user_id
                row.template_id = job.template_id
                row.created_at = job.created_at
                row.payload = payload
                row.version = current + 1
                row.mirrored_at = utcnow()
            db.commit()
            return row.version
        finally:
            db.close()

    def merge_update(self, job_id: str, fields: dict[str, Any]) -> JobData | None:
        """Overlay ``fields`` on the mirrored record.

        Returns the merged job, or ``None`` when the job is not mirrored (an
        update for an unknown job is dropped rather than inventing a record).
        """
        current = self.get_by_id(job_id)
        if current is None:
            logger.debug("merge_update: job %s not mirrored", job_id)
            return None
        merged = current.model_copy(update=fields)
        # Re-validate so nested prompt dicts become models again
        merged = JobData.model_validate(merged.model_dump())
        self.upsert(merged)
        return merged

    def delete(self, job_id: str) -> bool:
        db = self._session_factory()
        try:
            deleted = db.query(MirroredJob).filter(MirroredJob.job_id == job_id).delete()
            db.commit()
            return bool(deleted)
        finally:
            db.close()

    def replace_all(self, jobs: list[JobData], user_id: str | None = None) -> None:
        """Make the mirror match a fresh remote listing.

        Only records belonging to ``user_id`` (or every record when it is
        ``None``) are dropped before the listing is written.
        """
        db = self._session_factory()
        try:
            q = db.query(MirroredJob)
            if user_id is not None:
                q = q.filter(MirroredJob.user_id == user_id)
            existing = {row.job_id: row for row in q.all()}
            fresh_ids = {job.id for job in jobs}
            for job_id, row in existing.items():
                if job_id not in fresh_ids:
                    db.delete(row)

            now = utcnow()
            for job in jobs:
                row = existing.get(job.id) or db.get(MirroredJob, job.id)
                if row is None:
                    row = MirroredJob(job_id=job.id, version=0)
                    db.add(row)
                row.user_id = job.user_id
                row.template_id = job.template_id
                row.created_at = job.created_at
                row.payload = job.model_dump(mode="json")
                row.version = (row.version or 0) + 1
                row.mirrored_at = now
            db.commit()
        finally:
            db.close()
        logger.debug("Mirror replaced with %d jobs", len(jobs))
