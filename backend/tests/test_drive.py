import json
from datetime import date
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.drive.client import DriveClient
from app.drive.session import DriveSession
from app.errors import DriveAuthError, DriveExportError
from app.models.job import JOB_STATUS_COMPLETED, JOB_STATUS_PROCESSING, JobData
from app.services.drive_export import export_file_name, export_folder_name, export_job_to_drive

from conftest import make_row


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# DriveSession
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_acquire_returns_valid_token_without_refresh():
    refresher = AsyncMock()
    session = DriveSession("tok", expires_at=5_000, clock=_Clock(), refresher=refresher)

    assert await session.acquire() == "tok"
    refresher.assert_not_awaited()


@pytest.mark.asyncio
async def test_acquire_refreshes_token_close_to_expiry():
    clock = _Clock()
    refresher = AsyncMock(return_value={"access_token": "fresh", "expires_in": 3600})
    session = DriveSession(
        "stale", expires_at=clock.now + 30, refresh_token="r1", clock=clock, refresher=refresher
    )

    assert await session.acquire() == "fresh"
    refresher.assert_awaited_once_with("r1")
    assert session.is_authenticated


@pytest.mark.asyncio
async def test_acquire_without_any_token_raises():
    session = DriveSession()
    assert not session.is_authenticated
    with pytest.raises(DriveAuthError):
        await session.acquire()


@pytest.mark.asyncio
async def test_failed_refresh_invalidates_session():
    request = httpx.Request("POST", "https://oauth2.googleapis.com/token")
    refresher = AsyncMock(
        side_effect=httpx.HTTPStatusError(
            "bad grant", request=request, response=httpx.Response(400, request=request)
        )
    )
    session = DriveSession(
        "old", expires_at=0, refresh_token="r1", clock=_Clock(), refresher=refresher
    )

    with pytest.raises(DriveAuthError):
        await session.acquire()
    assert not session.is_authenticated


def test_from_token_response():
    session = DriveSession.from_token_response(
        {"access_token": "a", "refresh_token": "r", "expires_in": 3600}, clock=_Clock()
    )
    assert session.is_authenticated
    session.invalidate()
    assert not session.is_authenticated


# ---------------------------------------------------------------------------
# DriveClient
# ---------------------------------------------------------------------------


def _client(handler) -> DriveClient:
    return DriveClient(DriveSession("tok"), transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_create_folder_sends_folder_metadata():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "folder_1", "name": "x"})

    folder_id = await _client(handler).create_folder("Carousel", parent_id="root_1")

    assert folder_id == "folder_1"
    assert seen["auth"] == "Bearer tok"
    assert seen["body"] == {
        "name": "Carousel",
        "mimeType": "application/vnd.google-apps.folder",
        "parents": ["root_1"],
    }


@pytest.mark.asyncio
async def test_upload_file_is_multipart():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["uploadType"] == "multipart"
        assert b"01_Demo.png" in request.content
        return httpx.Response(200, json={"id": "file_1", "name": "01_Demo.png"})

    result = await _client(handler).upload_file("01_Demo.png", b"png-bytes", "folder_1")
    assert result["id"] == "file_1"


@pytest.mark.asyncio
async def test_unauthorized_response_invalidates_session():
    client = _client(lambda request: httpx.Response(401, json={"error": "expired"}))

    with pytest.raises(httpx.HTTPStatusError):
        await client.create_folder("Carousel")
    assert not client.session.is_authenticated


@pytest.mark.asyncio
async def test_fetch_image_handles_data_uris():
    content, content_type = await _client(lambda r: httpx.Response(500)).fetch_image(
        "data:image/png;base64,aGVsbG8="
    )
    assert (content, content_type) == (b"hello", "image/png")


# ---------------------------------------------------------------------------
# export_job_to_drive
# ---------------------------------------------------------------------------


def _completed_job(**kwargs) -> JobData:
    kwargs.setdefault("image_urls", ["https://img/1.png", "https://img/2.png"])
    return JobData.from_row(make_row(status=JOB_STATUS_COMPLETED, progress=100, **kwargs))


def test_export_names():
    job = _completed_job()
    assert export_folder_name(job, date(2026, 3, 4)) == "Carousel - Demo - 2026-03-04"
    assert export_file_name(0, "Demo") == "01_Demo.png"
    assert export_file_name(11, "") == "12_Image.png"


@pytest.mark.asyncio
async def test_export_uploads_images_in_order():
    drive = DriveClient(DriveSession("tok"))
    image = (b"img", "image/jpeg")
    with (
        patch.object(drive, "create_folder", new_callable=AsyncMock) as create,
        patch.object(drive, "fetch_image", new_callable=AsyncMock, return_value=image),
        patch.object(drive, "upload_file", new_callable=AsyncMock) as upload,
    ):
        create.return_value = "folder_1"
        folder_id = await export_job_to_drive(_completed_job(), drive, today=date(2026, 3, 4))

    assert folder_id == "folder_1"
    create.assert_awaited_once_with("Carousel - Demo - 2026-03-04", None)
    names = [c.args[0] for c in upload.await_args_list]
    assert names == ["01_Demo.png", "02_Demo.png"]
    assert upload.await_args_list[0].kwargs["mime_type"] == "image/jpeg"


@pytest.mark.asyncio
async def test_export_refuses_unfinished_or_empty_jobs():
    drive = DriveClient(DriveSession("tok"))
    processing = JobData.from_row(make_row(status=JOB_STATUS_PROCESSING))

    with pytest.raises(DriveExportError):
        await export_job_to_drive(processing, drive)
    with pytest.raises(DriveExportError, match="No images"):
        await export_job_to_drive(_completed_job(image_urls=[]), drive)
