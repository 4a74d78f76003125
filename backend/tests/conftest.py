"""Shared fakes for the job lifecycle tests.

``FakeJobStore`` stands in for the Supabase tables, ``FakeClock`` drives the
poller without real sleeping, and the ``mirror`` fixture is an isolated
in-memory SQLite mirror.
"""

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.errors import StoreReadError, StoreWriteError
from app.models import Base
from app.services.job_events import JobEventBus
from app.services.job_mirror import JobMirror


class FakeJobStore:
    """In-memory replacement for ``SupabaseJobStore``.

    ``script_reads(job_id, *steps)`` queues what successive ``fetch_job``
    calls observe: a dict is applied to the row before it is returned (as if
    the processor had written it), an exception is raised instead.
    """

    def __init__(self) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.templates: dict[str, dict[str, Any]] = {}
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.read_count = 0
        self.fail_reads = False
        self.fail_writes = False
        self.fail_templates = False
        self._scripts: dict[str, list[Any]] = {}

    def script_reads(self, job_id: str, *steps: Any) -> None:
        self._scripts.setdefault(job_id, []).extend(steps)

    async def insert_job(self, row: dict[str, Any]) -> None:
        if self.fail_writes:
            raise StoreWriteError("store unreachable")
        self.rows[row["id"]] = copy.deepcopy(row)

    async def fetch_job(self, job_id: str) -> dict[str, Any] | None:
        self.read_count += 1
        if self.fail_reads:
            raise StoreReadError("store unreachable")
        script = self._scripts.get(job_id)
        if script:
            step = script.pop(0)
            if isinstance(step, Exception):
                raise step
            self.rows[job_id].update(step)
        row = self.rows.get(job_id)
        return copy.deepcopy(row) if row is not None else None

    async def update_job(self, job_id: str, fields: dict[str, Any]) -> None:
        if self.fail_writes:
            raise StoreWriteError("store unreachable")
        self.updates.append((job_id, copy.deepcopy(fields)))
        if job_id in self.rows:
            self.rows[job_id].update(copy.deepcopy(fields))

    async def delete_job(self, job_id: str) -> None:
        if self.fail_writes:
            raise StoreWriteError("store unreachable")
        self.rows.pop(job_id, None)

    async def list_jobs(
        self,
        *,
        user_id: str | None = None,
        template_id: str | None = None,
        ascending: bool = False,
    ) -> list[dict[str, Any]]:
        if self.fail_reads:
            raise StoreReadError("store unreachable")
        rows = [
            copy.deepcopy(r)
            for r in self.rows.values()
            if (user_id is None or r.get("user_id") == user_id)
            and (template_id is None or r.get("template_id") == template_id)
        ]
        return sorted(rows, key=lambda r: r["created_at"], reverse=not ascending)

    async def fetch_template(self, template_id: str) -> dict[str, Any] | None:
        if self.fail_templates:
            raise StoreReadError("templates unreachable")
        return self.templates.get(template_id)


class FakeProcessor:
    """Records invocations; raises ``error`` when set."""

    def __init__(self) -> None:
        self.invoked: list[str] = []
        self.error: Exception | None = None

    async def invoke(self, job: Any) -> dict:
        if self.error is not None:
            raise self.error
        self.invoked.append(job.id)
        return {"success": True}


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


def make_row(job_id: str = "job-1", **overrides: Any) -> dict[str, Any]:
    """A ``jobs`` table row as the store would return it."""
    created = datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(
        minutes=overrides.pop("minutes", 0)
    )
    row = {
        "id": job_id,
        "name": "Demo",
        "template_id": "t1",
        "template_name": "Template One",
        "template_description": "a bold template",
        "template_image_url": "https://cdn.example.com/t1.png",
        "status": "queued",
        "progress": 0,
        "variants": 3,
        "data_type": "csv",
        "data_content": [{"a": "1"}],
        "created_at": created.isoformat(),
        "updated_at": created.isoformat(),
        "message": None,
        "image_urls": None,
        "prompts": None,
        "user_id": "user-1",
    }
    row.update(overrides)
    return row


@pytest.fixture
def store() -> FakeJobStore:
    return FakeJobStore()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def events() -> JobEventBus:
    return JobEventBus()


@pytest.fixture
def mirror() -> JobMirror:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return JobMirror(sessionmaker(bind=engine, expire_on_commit=False))
