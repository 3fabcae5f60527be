"""Local file storage for research source logos.

Files live under ``{MEDIA_ROOT}/research-logos/{user_id}/{epoch_ms}.{ext}``
and are served from ``{MEDIA_BASE_URL}/research-logos/...``. Disk writes
run in asyncio.to_thread() so uploads never block the event loop.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

BUCKET = "research-logos"
MAX_LOGO_BYTES = 5 * 1024 * 1024


class InvalidUploadError(ValueError):
    """The uploaded file is not an acceptable logo."""


def file_extension(filename: str | None, content_type: str | None) -> str:
    """Extension from the filename, else from the image content type."""
    if filename and "." in filename:
        ext = filename.rsplit(".", 1)[1].strip().lower()
        if ext and "/" not in ext:
            return ext
    subtype = (content_type or "").split("/", 1)[-1].split(";", 1)[0].strip().lower()
    return {"jpeg": "jpg", "svg+xml": "svg"}.get(subtype, subtype or "bin")


class LogoStorage:
    """Stores logo images and returns their public URLs.

    Args:
        root: Media root directory (the bucket directory is created inside it).
        base_url: Public URL prefix the media root is served under.
    """

    def __init__(self, root: str | Path, base_url: str) -> None:
        self._root = Path(root) / BUCKET
        self._base_url = base_url.rstrip("/")

    def public_url(self, path: str) -> str:
        return f"{self._base_url}/{BUCKET}/{path}"

    async def save_logo(
        self,
        user_id: str,
        data: bytes,
        filename: str | None,
        content_type: str | None,
    ) -> str:
        """Write an uploaded logo and return its public URL.

        Raises:
            InvalidUploadError: If the file is not an image, empty or too large.
        """
        if not (content_type or "").startswith("image/"):
            raise InvalidUploadError("Please upload an image file")
        if not data:
            raise InvalidUploadError("Uploaded file is empty")
        if len(data) > MAX_LOGO_BYTES:
            raise InvalidUploadError("Logo must be 5MB or smaller")

        path = f"{user_id}/{int(time.time() * 1000)}.{file_extension(filename, content_type)}"
        target = self._root / path

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("storage.logo_saved", user_id=user_id, path=path, size=len(data))
        return self.public_url(path)
