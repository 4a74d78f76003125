"""Export a completed job's images into a new Google Drive folder."""

import logging
from datetime import date

from app.drive.client import DriveClient
from app.errors import DriveExportError
from app.models.job import JOB_STATUS_COMPLETED, JobData

logger = logging.getLogger(__name__)


def export_folder_name(job: JobData, today: date | None = None) -> str:
    today = today or date.today()
    return f"Carousel - {job.name} - {today.isoformat()}"


def export_file_name(index: int, name: str) -> str:
    """``01_<name>.png`` style names keep the carousel order in Drive."""
    return f"{index + 1:02d}_{name or 'Image'}.png"


async def export_job_to_drive(
    job: JobData,
    client: DriveClient,
    *,
    parent_folder_id: str | None = None,
    today: date | None = None,
) -> str:
    """Upload every image of ``job`` in order and return the new folder id.

    Raises:
        DriveExportError: the job is not completed or has no images.
        DriveAuthError: the session has no usable token.
    """
    if job.status != JOB_STATUS_COMPLETED:
        raise DriveExportError(f"Job {job.id} is {job.status}, only completed jobs can be exported")
    if not job.image_urls:
        raise DriveExportError("No images to export")

    folder_id = await client.create_folder(export_folder_name(job, today), parent_folder_id)

    total = len(job.image_urls)
    for index, url in enumerate(job.image_urls):
        content, content_type = await client.fetch_image(url)
        await client.upload_file(
            export_file_name(index, job.name),
            content,
            folder_id,
            mime_type=content_type,
        )
        logger.debug("Uploaded image %d/%d for job %s", index + 1, total, job.id)

    logger.info("Exported %d images for job %s to Drive folder %s", total, job.id, folder_id)
    return folder_id
