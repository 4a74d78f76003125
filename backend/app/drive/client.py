import base64
import json as json_module
import logging

import httpx

from app.drive.session import DriveSession

DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

logger = logging.getLogger(__name__)


class DriveClient:
    """Google Drive API wrapper bound to a ``DriveSession``.

    The bearer token is taken from the session on every call, so a refresh
    performed by one call is picked up by the next. A 401 from Drive
    invalidates the session's access token before the error is raised.
    """

    def __init__(
        self,
        session: DriveSession,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.session = session
        self._transport = transport

    def _http(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, **kwargs)

    async def _post(self, url: str, what: str, **kwargs) -> dict:
        """Authenticated POST returning the decoded JSON body."""
        token = await self.session.acquire()
        async with self._http() as client:
            resp = await client.post(
                url, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
        if resp.status_code == 401:
            self.session.invalidate()
        if not resp.is_success:
            logger.error(
                "Drive API error %s during %s: %s",
                resp.status_code,
                what,
                resp.text[:500],
            )
        resp.raise_for_status()
        return resp.json()

    async def create_folder(self, name: str, parent_id: str | None = None) -> str:
        """Create a folder and return its id."""
        metadata: dict = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent_id:
            metadata["parents"] = [parent_id]
        data = await self._post(
            f"{DRIVE_API_BASE}/files",
            "create_folder",
            params={"fields": "id,name"},
            json=metadata,
        )
        folder_id = data["id"]
        logger.info("Created Drive folder %r (%s)", name, folder_id)
        return folder_id

    async def upload_file(
        self,
        name: str,
        content: bytes,
        folder_id: str | None = None,
        mime_type: str = "image/png",
    ) -> dict:
        """Upload a file (multipart) and return ``{id, name}``."""
        metadata: dict = {"name": name}
        if folder_id:
            metadata["parents"] = [folder_id]
        return await self._post(
            DRIVE_UPLOAD_URL,
            "upload_file",
            params={"uploadType": "multipart", "fields": "id,name"},
            files={
                "metadata": ("metadata", json_module.dumps(metadata), "application/json"),
                "file": (name, content, mime_type),
            },
        )

    async def fetch_image(self, url: str) -> tuple[bytes, str]:
        """Download a (public) image URL; returns ``(bytes, content_type)``."""
        if url.startswith("data:"):
            header, _, encoded = url.partition(",")
            content_type = header[5:].split(";")[0] or "image/png"
            return base64.b64decode(encoded), content_type
        async with self._http(follow_redirects=True) as client:
            resp = await client.get(url)
        if not resp.is_success:
            logger.error("Failed to fetch image %s: %s", url, resp.status_code)
        resp.raise_for_status()
        return resp.content, resp.headers.get("content-type", "image/png")
