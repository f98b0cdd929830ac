"""Thread transcripts: rendering and pluggable storage."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional

from instrukt_ai_logging import get_logger

from modmail.config import LogConfig, LogStorageType
from modmail.core.dates import format_log_timestamp
from modmail.core.formatters import NEW_BODY_KEY
from modmail.core.models import Thread, ThreadMessage, ThreadMessageType

if TYPE_CHECKING:
    from modmail.core.db import Db

logger = get_logger(__name__)

_SIMPLE_EXCLUDED = frozenset(
    {
        ThreadMessageType.SYSTEM,
        ThreadMessageType.SYSTEM_TO_USER,
        ThreadMessageType.CHAT,
        ThreadMessageType.COMMAND,
    }
)


def _to_user_body(message: ThreadMessage) -> str:
    if message.use_legacy_format:
        # Pre-formatted: role and name are already in the body
        return message.body
    if message.is_anonymous:
        return f"(Anonymous) {message.role_name or 'Moderator'}: {message.body}"
    if message.role_name:
        return f"({message.role_name}) {message.user_name}: {message.body}"
    return f"{message.user_name}: {message.body}"


def format_log_line(message: ThreadMessage, *, verbose: bool = False) -> str:
    """Render one transcript line.

    Legacy messages hold a whole old-style log and are returned verbatim, as
    are audit entries whose original reply was not recorded.
    """
    if message.message_type == ThreadMessageType.LEGACY:
        return message.body

    line = f"[{format_log_timestamp(message.created_at)}]"
    if verbose:
        if message.dm_channel_id:
            line += f" [DM CHA {message.dm_channel_id}]"
        if message.dm_message_id:
            line += f" [DM MSG {message.dm_message_id}]"

    kind = message.message_type
    if kind == ThreadMessageType.FROM_USER:
        line += f" [FROM USER] [{message.user_name}] {message.body}"
    elif kind == ThreadMessageType.TO_USER:
        if verbose:
            line += f" [TO USER] [{message.message_number or 0}] [{message.user_name}]"
        else:
            line += f" [TO USER] [{message.user_name}]"
        line += f" {_to_user_body(message)}"
    elif kind == ThreadMessageType.SYSTEM:
        line += f" [BOT] {message.body}"
    elif kind == ThreadMessageType.SYSTEM_TO_USER:
        line += f" [BOT TO USER] {message.body}"
    elif kind == ThreadMessageType.CHAT:
        line += f" [CHAT] [{message.user_name}] {message.body}"
        chat_attachments = message.get_metadata_value("attachments")
        if isinstance(chat_attachments, list) and chat_attachments:
            line += ("\n" if message.body else "") + "\n".join(str(link) for link in chat_attachments)
    elif kind == ThreadMessageType.COMMAND:
        line += f" [COMMAND] [{message.user_name}] {message.body}"
    elif kind == ThreadMessageType.REPLY_EDITED:
        original = message.original_message()
        if original is None:
            return message.body
        line += f" [REPLY EDITED] {original.user_name} edited reply {original.message_number}:"
        line += f"\n\nBefore:\n{original.body}"
        line += f"\n\nAfter:\n{message.get_metadata_value(NEW_BODY_KEY) or ''}"
    elif kind == ThreadMessageType.REPLY_DELETED:
        original = message.original_message()
        if original is None:
            return message.body
        line += f" [REPLY DELETED] {original.user_name} deleted reply {original.message_number}:"
        line += f"\n\n{original.body}"
    else:
        line += f" [{message.user_name}] {message.body}"

    if message.attachments:
        line += "\n\n" + "\n".join(message.attachments)

    return line


def format_log(
    thread: Thread,
    messages: Iterable[ThreadMessage],
    *,
    simple: bool = False,
    verbose: bool = False,
) -> str:
    """Render a thread's messages into a plain-text transcript.

    Args:
        thread: Thread the messages belong to
        messages: Messages in transcript order
        simple: Keep only user messages, staff replies and reply audits
        verbose: Include correlation ids and reply numbers

    Returns:
        Header line, blank line, then one entry per message
    """
    if simple:
        messages = [m for m in messages if m.message_type not in _SIMPLE_EXCLUDED]

    lines = [format_log_line(message, verbose=verbose) for message in messages]
    header = (
        f"# Thread #{thread.thread_number} with {thread.user_name} ({thread.user_id}) "
        f"started at {format_log_timestamp(thread.created_at)}"
    )
    return f"{header}\n\n" + "\n".join(lines)


@dataclass
class LogFile:
    name: str
    content: str


class LogStorage(ABC):
    """Where a transcript goes once a thread needs one."""

    storage_type: LogStorageType

    def should_save(self, thread: Thread) -> bool:
        return True

    @abstractmethod
    async def save(self, thread: Thread, messages: list[ThreadMessage]) -> dict[str, object]:
        """Persist the transcript and return the locator stored on the thread."""

    def get_url(self, thread: Thread) -> Optional[str]:
        return None

    def get_file(self, thread: Thread) -> Optional[LogFile]:
        return None


class NoneLogStorage(LogStorage):
    storage_type = LogStorageType.NONE

    async def save(self, thread: Thread, messages: list[ThreadMessage]) -> dict[str, object]:
        return {}


class LocalLogStorage(LogStorage):
    """Transcripts are rendered on demand by the log web viewer."""

    storage_type = LogStorageType.LOCAL

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    async def save(self, thread: Thread, messages: list[ThreadMessage]) -> dict[str, object]:
        return {}

    def get_url(self, thread: Thread) -> Optional[str]:
        return f"{self.base_url}/logs/{thread.id}"


class AttachmentLogStorage(LogStorage):
    """Writes the transcript of a closed thread to `<directory>/<thread id>.txt`."""

    storage_type = LogStorageType.ATTACHMENT

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)

    def should_save(self, thread: Thread) -> bool:
        return thread.is_closed()

    async def save(self, thread: Thread, messages: list[ThreadMessage]) -> dict[str, object]:
        filename = f"{thread.id}.txt"
        full_path = self.directory / filename
        self.directory.mkdir(parents=True, exist_ok=True)
        full_path.write_text(format_log(thread, messages), encoding="utf-8")
        return {"full_path": str(full_path), "filename": filename}

    def get_file(self, thread: Thread) -> Optional[LogFile]:
        full_path = thread.log_storage_data.get("full_path")
        if not full_path:
            return None
        path = Path(str(full_path))
        if not path.exists():
            return None
        filename = str(thread.log_storage_data.get("filename") or "unknown")
        return LogFile(name=filename, content=path.read_text(encoding="utf-8"))


def create_log_storage(log_config: LogConfig, base_url: str) -> LogStorage:
    storage = log_config.storage
    if storage is LogStorageType.NONE:
        return NoneLogStorage()
    if storage is LogStorageType.LOCAL:
        return LocalLogStorage(base_url)
    if storage is LogStorageType.ATTACHMENT:
        return AttachmentLogStorage(log_config.attachment_directory)
    raise ValueError(f"Unknown log storage option: {storage}")


class LogManager:
    """Saves transcripts once per thread and resolves their URL or file."""

    def __init__(self, db: "Db", storage: LogStorage, variants: Optional[dict[LogStorageType, LogStorage]] = None):
        self.db = db
        self.storage = storage
        # Threads keep the type they were saved with even if config changes later
        self._variants = dict(variants or {})
        self._variants.setdefault(storage.storage_type, storage)

    def storage_for(self, thread: Thread) -> Optional[LogStorage]:
        if not thread.log_storage_type:
            return None
        try:
            return self._variants.get(LogStorageType(thread.log_storage_type))
        except ValueError:
            logger.warning("Thread %s has unknown log storage type %s", thread.id[:8], thread.log_storage_type)
            return None

    async def save_log_to_storage(self, thread: Thread) -> bool:
        """Persist the transcript with the configured storage.

        Returns:
            True if saved; False if the storage declined (e.g. thread not closed yet)
        """
        if not self.storage.should_save(thread):
            return False

        messages = await self.db.get_thread_messages(thread.id)
        data = await self.storage.save(thread, messages)
        thread.log_storage_type = self.storage.storage_type.value
        thread.log_storage_data = data
        await self.db.update_thread(
            thread.id, log_storage_type=thread.log_storage_type, log_storage_data=thread.log_storage_data
        )
        logger.debug("Saved log for thread %s with %s storage", thread.id[:8], thread.log_storage_type)
        return True

    async def get_log_url(self, thread: Thread) -> Optional[str]:
        if not thread.log_storage_type:
            await self.save_log_to_storage(thread)
        storage = self.storage_for(thread)
        return storage.get_url(thread) if storage else None

    async def get_log_file(self, thread: Thread) -> Optional[LogFile]:
        if not thread.log_storage_type:
            await self.save_log_to_storage(thread)
        storage = self.storage_for(thread)
        return storage.get_file(thread) if storage else None
