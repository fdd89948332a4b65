"""Attachment ingestion: file bytes to base64 inline payloads with preview handles."""

import asyncio
import base64
import logging
import mimetypes
import uuid
from collections.abc import Callable
from pathlib import Path

from chamber.models import Attachment

logger = logging.getLogger(__name__)

_FALLBACK_MIME = "application/octet-stream"


class AttachmentReadError(Exception):
    """Raised when an attachment file cannot be read."""

    def __init__(self, path: Path, message: str) -> None:
        self.path = path
        super().__init__(f"Cannot read {path}: {message}")


class AttachmentCollector:
    """Turns files into Attachments and tracks their preview handles."""

    def __init__(self, id_factory: Callable[[], str] | None = None) -> None:
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex[:8])
        self._previews: dict[str, Path] = {}

    async def ingest(self, path: Path) -> Attachment:
        path = Path(path)
        try:
            raw = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise AttachmentReadError(path, exc.strerror or str(exc)) from exc

        mime_type, _ = mimetypes.guess_type(path.name)
        handle = f"preview://{self._id_factory()}/{path.name}"
        self._previews[handle] = path

        logger.debug("Ingested %s (%s, %d bytes)", path.name, mime_type or _FALLBACK_MIME, len(raw))
        return Attachment(
            name=path.name,
            preview=handle,
            data=base64.b64encode(raw).decode("ascii"),
            mime_type=mime_type or _FALLBACK_MIME,
        )

    def revoke(self, attachment: Attachment) -> None:
        self._previews.pop(attachment.preview, None)

    def is_live(self, attachment: Attachment) -> bool:
        return attachment.preview in self._previews

    def resolve(self, handle: str) -> Path | None:
        return self._previews.get(handle)
