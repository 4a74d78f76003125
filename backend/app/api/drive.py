import logging

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException

from app.auth.supabase_auth import get_current_user
from app.drive.client import DriveClient
from app.drive.session import DriveSession
from app.errors import DriveAuthError, DriveExportError
from app.services.drive_export import export_job_to_drive
from app.services.job_service import AuthUser, JobService, get_job_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/drive", tags=["drive"])


def get_drive_session(
    x_drive_token: str | None = Header(None),
    x_drive_refresh_token: str | None = Header(None),
) -> DriveSession:
    """Build a per-request Drive session from the caller's Google tokens."""
    if not x_drive_token and not x_drive_refresh_token:
        raise HTTPException(status_code=401, detail="Not authenticated with Google Drive")
    return DriveSession(x_drive_token, refresh_token=x_drive_refresh_token)


@router.post("/export/{job_id}")
async def export_job(
    job_id: str,
    parent_folder_id: str | None = None,
    current_user: AuthUser = Depends(get_current_user),
    session: DriveSession = Depends(get_drive_session),
    service: JobService = Depends(get_job_service),
) -> dict:
    """Copy a completed job's images into a new Drive folder."""
    job = await service.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.user_id is not None and job.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Forbidden")

    try:
        folder_id = await export_job_to_drive(
            job, DriveClient(session), parent_folder_id=parent_folder_id
        )
    except DriveAuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except DriveExportError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except httpx.HTTPStatusError as exc:
        if exc.response.status_code == 401:
            raise HTTPException(status_code=401, detail="Google Drive session expired") from exc
        logger.error("Drive export failed for job %s: %s", job_id, exc)
        raise HTTPException(status_code=502, detail="Failed to export carousel to Google Drive") from exc
    except httpx.HTTPError as exc:
        logger.error("Drive export failed for job %s: %s", job_id, exc)
        raise HTTPException(status_code=502, detail="Failed to export carousel to Google Drive") from exc
    return {"folder_id": folder_id}
