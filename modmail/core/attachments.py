"""Attachment storage strategies.

Every relayed attachment is turned into a durable URL by one of three stores,
picked from `attachments.storage`:

- original: keep the platform's own URL
- local: download into `attachments.directory` and serve from `web.url`
- discord: re-upload into a dedicated storage channel

Saves are deduplicated per attachment id while in flight.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
from instrukt_ai_logging import get_logger

from modmail.config import AttachmentConfig, AttachmentStorageType
from modmail.constants import DISCORD_MAX_UPLOAD_BYTES
from modmail.core.errors import DeliveryFailure
from modmail.core.models import Attachment, OutgoingFile
from modmail.core.protocols import ChannelMessenger
from modmail.utils import bounded_retry

logger = get_logger(__name__)

DOWNLOAD_TIMEOUT_S = 30.0


@dataclass
class SavedAttachment:
    url: str
    failed: bool = False


def _error_result(reason: Optional[str] = None) -> SavedAttachment:
    return SavedAttachment(url=f"Attachment could not be saved{f': {reason}' if reason else ''}", failed=True)


class AttachmentStore(ABC):
    """Base store; subclasses implement `_save`."""

    def __init__(self) -> None:
        self._in_flight: dict[str, asyncio.Task[SavedAttachment]] = {}

    async def save(self, attachment: Attachment) -> SavedAttachment:
        """Store an attachment, sharing one in-flight save per attachment id."""
        task = self._in_flight.get(attachment.id)
        if task is None:
            task = asyncio.create_task(self._save(attachment), name=f"attachment-save-{attachment.id}")
            self._in_flight[attachment.id] = task
            task.add_done_callback(lambda _t: self._in_flight.pop(attachment.id, None))
        return await asyncio.shield(task)

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @abstractmethod
    async def _save(self, attachment: Attachment) -> SavedAttachment: ...


class OriginalAttachmentStore(AttachmentStore):
    async def _save(self, attachment: Attachment) -> SavedAttachment:
        return SavedAttachment(url=attachment.url)


class LocalAttachmentStore(AttachmentStore):
    """Downloads attachments to disk; files are named by attachment id."""

    def __init__(self, directory: str, base_url: str, max_retries: int) -> None:
        super().__init__()
        self.directory = Path(directory)
        self.base_url = base_url.rstrip("/")
        self._download = bounded_retry(max_attempts=max_retries, retry_on=(httpx.HTTPError,))(self._download_once)

    def local_path(self, attachment_id: str) -> Path:
        return self.directory / attachment_id

    def local_url(self, attachment_id: str, filename: Optional[str] = None) -> str:
        return f"{self.base_url}/attachments/{attachment_id}/{filename or 'file.bin'}"

    async def _download_once(self, url: str) -> bytes:
        async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT_S, follow_redirects=True) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.content

    async def _save(self, attachment: Attachment) -> SavedAttachment:
        target = self.local_path(attachment.id)
        if target.exists():
            return SavedAttachment(url=self.local_url(attachment.id, attachment.filename))

        data = await self._download(attachment.url)
        self.directory.mkdir(parents=True, exist_ok=True)
        partial = target.with_suffix(".part")
        partial.write_bytes(data)
        partial.replace(target)
        logger.debug("Saved attachment %s (%d bytes) to %s", attachment.id, len(data), target)

        return SavedAttachment(url=self.local_url(attachment.id, attachment.filename))


class ChannelAttachmentStore(AttachmentStore):
    """Re-uploads attachments into a storage channel and keeps the new URL."""

    def __init__(self, messenger: ChannelMessenger, channel_id: Optional[str], max_retries: int) -> None:
        super().__init__()
        self.messenger = messenger
        self.channel_id = channel_id
        self._upload = bounded_retry(max_attempts=max_retries, retry_on=(DeliveryFailure,))(self._upload_once)

    async def _upload_once(self, attachment: Attachment) -> list[str]:
        if not self.channel_id:
            raise RuntimeError("Attachment storage channel not configured")
        sent = await self.messenger.send(
            self.channel_id, "", files=[OutgoingFile(filename=attachment.filename, url=attachment.url)]
        )
        return sent.attachment_urls

    async def _save(self, attachment: Attachment) -> SavedAttachment:
        if attachment.size > DISCORD_MAX_UPLOAD_BYTES:
            return _error_result("attachment too large (max 8MB)")

        try:
            urls = await self._upload(attachment)
        except DeliveryFailure as e:
            logger.error("Attachment %s could not be re-uploaded: %s", attachment.id, e)
            return _error_result()

        if not urls:
            return _error_result()
        return SavedAttachment(url=urls[0])


def create_attachment_store(
    attachment_config: AttachmentConfig, messenger: ChannelMessenger, base_url: str
) -> AttachmentStore:
    """Build the configured store."""
    storage = attachment_config.storage
    if storage is AttachmentStorageType.ORIGINAL:
        return OriginalAttachmentStore()
    if storage is AttachmentStorageType.LOCAL:
        return LocalAttachmentStore(attachment_config.directory, base_url, attachment_config.max_retries)
    if storage is AttachmentStorageType.DISCORD:
        return ChannelAttachmentStore(messenger, attachment_config.storage_channel_id, attachment_config.max_retries)
    raise ValueError(f"Unknown attachment storage option: {storage}")
