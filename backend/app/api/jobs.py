"""Jobs API - create, inspect, watch and delete carousel generation jobs.

Implements:
  POST   /api/jobs                 - create a job (processing starts in the background)
  POST   /api/jobs/upload          - create a CSV job from an uploaded CSV or .xlsx file
  GET    /api/jobs                 - list the caller's jobs, newest first
  GET    /api/jobs/{job_id}        - read one job
  GET    /api/jobs/{job_id}/events - server-sent "job-updated" events
  DELETE /api/jobs/{job_id}        - delete a job remotely and locally
"""

import json
import logging
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from app.auth.supabase_auth import get_current_user, get_optional_user
from app.errors import AuthenticationRequired, JobValidationError, StoreWriteError
from app.models.job import DATA_TYPE_CSV, JobData
from app.services.data_sources import parse_upload, require_columns
from app.services.job_service import AuthUser, JobService, get_job_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class CreateJobRequest(BaseModel):
    name: str
    template_id: str
    template_name: str = ""
    variants: int = Field(default=1, ge=1)
    data_type: str
    data: list[dict[str, Any]] | str | None = None


class JobCreatedResponse(BaseModel):
    job_id: str


class JobListResponse(BaseModel):
    jobs: list[JobData]
    total: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _get_owned_job(service: JobService, job_id: str, user: AuthUser) -> JobData:
    job = await service.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.user_id is not None and job.user_id != user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return job


def _sse(event_name: str, payload: dict) -> str:
    return f"event: {event_name}\ndata: {json.dumps(payload)}\n\n"


async def _create(service: JobService, user: AuthUser | None, **fields: Any) -> JobCreatedResponse:
    try:
        job_id = await service.create_job(user, **fields)
    except AuthenticationRequired as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except JobValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except StoreWriteError as exc:
        logger.error("Job creation failed: %s", exc)
        raise HTTPException(status_code=502, detail="Could not save job, please try again") from exc
    return JobCreatedResponse(job_id=job_id)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("", response_model=JobCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_job(
    body: CreateJobRequest,
    current_user: AuthUser | None = Depends(get_optional_user),
    service: JobService = Depends(get_job_service),
) -> JobCreatedResponse:
    """Queue a new job and return its id immediately.

    Poll ``GET /api/jobs/{job_id}`` or subscribe to its events for progress.
    """
    return await _create(
        service,
        current_user,
        name=body.name,
        template_id=body.template_id,
        template_name=body.template_name,
        variants=body.variants,
        data_type=body.data_type,
        data_content=body.data if body.data is not None else "",
    )


_MAX_UPLOAD_SIZE = 5 * 1024 * 1024  # 5 MB


@router.post("/upload", response_model=JobCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_job_from_upload(
    file: UploadFile = File(..., description="CSV or .xlsx data file with a header row"),
    name: str = Form(...),
    template_id: str = Form(...),
    template_name: str = Form(""),
    variants: int = Form(1, ge=1),
    required_columns: str = Form("", description="Comma-separated columns the file must have"),
    current_user: AuthUser | None = Depends(get_optional_user),
    service: JobService = Depends(get_job_service),
) -> JobCreatedResponse:
    """Queue a CSV job from an uploaded CSV or spreadsheet file.

    Accepts multipart/form-data. Rows are parsed server-side and stored as
    the job's data content.
    """
    if current_user is None:
        raise HTTPException(status_code=401, detail=str(AuthenticationRequired()))
    if file.size and file.size > _MAX_UPLOAD_SIZE:
        raise HTTPException(413, f"File too large: {file.filename} (max 5MB)")
    data = await file.read()
    columns = [c.strip() for c in required_columns.split(",") if c.strip()]
    try:
        rows = await run_in_threadpool(parse_upload, file.filename or "", data)
        require_columns(rows, columns)
    except JobValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    return await _create(
        service,
        current_user,
        name=name,
        template_id=template_id,
        template_name=template_name,
        variants=variants,
        data_type=DATA_TYPE_CSV,
        data_content=rows,
    )


@router.get("", response_model=JobListResponse)
async def list_jobs(
    template_id: str | None = Query(default=None, description="Only jobs for this template"),
    current_user: AuthUser = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobListResponse:
    """List the caller's jobs, newest first.

    Served from the local mirror when the job store is unreachable.
    """
    if template_id:
        jobs = await service.get_jobs_by_template(template_id, current_user)
    else:
        jobs = await service.get_all_jobs(current_user)
    return JobListResponse(jobs=jobs, total=len(jobs))


@router.get("/{job_id}", response_model=JobData)
async def get_job(
    job_id: str,
    current_user: AuthUser = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobData:
    return await _get_owned_job(service, job_id, current_user)


@router.get("/{job_id}/events")
async def job_events(
    job_id: str,
    current_user: AuthUser = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> StreamingResponse:
    """Stream ``job-updated`` events for one job as server-sent events.

    Events are not replayed: read the job first, then re-read on each event.
    """
    await _get_owned_job(service, job_id, current_user)

    async def _stream() -> AsyncIterator[str]:
        async for event in service.events.stream(job_id):
            yield _sse("job-updated", event.to_payload())

    return StreamingResponse(
        _stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(
    job_id: str,
    current_user: AuthUser = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> Response:
    """Delete a job. On a store failure the job is left intact (502)."""
    await _get_owned_job(service, job_id, current_user)
    try:
        await service.delete_job(job_id)
    except StoreWriteError as exc:
        logger.error("Job deletion failed: %s", exc)
        raise HTTPException(status_code=502, detail="Could not delete job, please try again") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
