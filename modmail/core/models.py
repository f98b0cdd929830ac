"""Data models for threads, thread messages, and relay payloads."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from modmail.core.dates import parse_iso_datetime, to_db_timestamp, utc_now

JsonDict = dict[str, object]


class ThreadStatus(int, Enum):
    """Lifecycle state of a thread. Closed is terminal."""

    OPEN = 1
    CLOSED = 2
    SUSPENDED = 3


class ThreadMessageType(int, Enum):
    """Kind of logged event within a thread."""

    SYSTEM = 1
    CHAT = 2
    FROM_USER = 3
    TO_USER = 4
    LEGACY = 5
    COMMAND = 6
    SYSTEM_TO_USER = 7
    REPLY_EDITED = 8
    REPLY_DELETED = 9


def _load_json(value: object, default: object) -> object:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


@dataclass
class Thread:  # pylint: disable=too-many-instance-attributes  # Mirrors the threads table
    """One help-desk conversation pairing a user with a staff channel."""

    id: str
    thread_number: int
    status: ThreadStatus
    user_id: str
    user_name: str
    channel_id: str
    next_message_number: int = 1
    scheduled_close_at: Optional[datetime] = None
    scheduled_close_id: Optional[str] = None
    scheduled_close_name: Optional[str] = None
    scheduled_close_silent: bool = False
    scheduled_suspend_at: Optional[datetime] = None
    scheduled_suspend_id: Optional[str] = None
    scheduled_suspend_name: Optional[str] = None
    alert_ids: list[str] = field(default_factory=list)
    log_storage_type: Optional[str] = None
    log_storage_data: JsonDict = field(default_factory=dict)
    metadata: JsonDict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def is_open(self) -> bool:
        return self.status == ThreadStatus.OPEN

    def is_closed(self) -> bool:
        return self.status == ThreadStatus.CLOSED

    def is_suspended(self) -> bool:
        return self.status == ThreadStatus.SUSPENDED

    def get_metadata_value(self, key: str) -> object:
        return self.metadata.get(key)

    def to_dict(self) -> dict[str, object]:
        """Convert to a row dict for DB storage."""
        return {
            "id": self.id,
            "thread_number": self.thread_number,
            "status": int(self.status),
            "user_id": self.user_id,
            "user_name": self.user_name,
            "channel_id": self.channel_id,
            "next_message_number": self.next_message_number,
            "scheduled_close_at": to_db_timestamp(self.scheduled_close_at) if self.scheduled_close_at else None,
            "scheduled_close_id": self.scheduled_close_id,
            "scheduled_close_name": self.scheduled_close_name,
            "scheduled_close_silent": 1 if self.scheduled_close_silent else 0,
            "scheduled_suspend_at": to_db_timestamp(self.scheduled_suspend_at) if self.scheduled_suspend_at else None,
            "scheduled_suspend_id": self.scheduled_suspend_id,
            "scheduled_suspend_name": self.scheduled_suspend_name,
            "alert_ids": json.dumps(self.alert_ids),
            "log_storage_type": self.log_storage_type,
            "log_storage_data": json.dumps(self.log_storage_data),
            "metadata": json.dumps(self.metadata),
            "created_at": to_db_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "Thread":
        """Create thread from a DB row dict."""
        alert_ids = _load_json(data.get("alert_ids"), [])
        return cls(
            id=str(data["id"]),
            thread_number=int(data["thread_number"]),  # type: ignore[arg-type]
            status=ThreadStatus(int(data["status"])),  # type: ignore[arg-type]
            user_id=str(data["user_id"]),
            user_name=str(data.get("user_name") or ""),
            channel_id=str(data["channel_id"]),
            next_message_number=int(data.get("next_message_number") or 1),  # type: ignore[arg-type]
            scheduled_close_at=parse_iso_datetime(data.get("scheduled_close_at")),
            scheduled_close_id=data.get("scheduled_close_id"),  # type: ignore[arg-type]
            scheduled_close_name=data.get("scheduled_close_name"),  # type: ignore[arg-type]
            scheduled_close_silent=bool(data.get("scheduled_close_silent")),
            scheduled_suspend_at=parse_iso_datetime(data.get("scheduled_suspend_at")),
            scheduled_suspend_id=data.get("scheduled_suspend_id"),  # type: ignore[arg-type]
            scheduled_suspend_name=data.get("scheduled_suspend_name"),  # type: ignore[arg-type]
            alert_ids=[str(a) for a in alert_ids] if isinstance(alert_ids, list) else [],
            log_storage_type=data.get("log_storage_type"),  # type: ignore[arg-type]
            log_storage_data=_load_json(data.get("log_storage_data"), {}),  # type: ignore[arg-type]
            metadata=_load_json(data.get("metadata"), {}),  # type: ignore[arg-type]
            created_at=parse_iso_datetime(data.get("created_at")) or utc_now(),
        )


@dataclass
class ThreadMessage:  # pylint: disable=too-many-instance-attributes  # Mirrors the thread_messages table
    """One logged event within a thread."""

    thread_id: str
    message_type: ThreadMessageType
    id: Optional[int] = None
    message_number: Optional[int] = None
    user_id: Optional[str] = None
    user_name: str = ""
    role_name: Optional[str] = None
    body: str = ""
    is_anonymous: bool = False
    attachments: list[str] = field(default_factory=list)
    small_attachments: list[str] = field(default_factory=list)
    use_legacy_format: bool = False
    dm_channel_id: Optional[str] = None
    dm_message_id: Optional[str] = None
    inbox_message_id: Optional[str] = None
    metadata: JsonDict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def is_from_user(self) -> bool:
        return self.message_type == ThreadMessageType.FROM_USER

    def is_chat(self) -> bool:
        return self.message_type == ThreadMessageType.CHAT

    def get_metadata_value(self, key: str) -> object:
        return self.metadata.get(key)

    def original_message(self) -> Optional["ThreadMessage"]:
        """The reply an edit/delete audit entry refers to, if recorded."""
        raw = self.metadata.get("original_thread_message")
        if not isinstance(raw, dict):
            return None
        return ThreadMessage.from_dict(raw)

    def clone(self, **changes: object) -> "ThreadMessage":
        return replace(self, **changes)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, object]:
        """Convert to a row dict for DB storage."""
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "message_type": int(self.message_type),
            "message_number": self.message_number,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "role_name": self.role_name,
            "body": self.body,
            "is_anonymous": 1 if self.is_anonymous else 0,
            "attachments": json.dumps(self.attachments),
            "small_attachments": json.dumps(self.small_attachments),
            "use_legacy_format": 1 if self.use_legacy_format else 0,
            "dm_channel_id": self.dm_channel_id,
            "dm_message_id": self.dm_message_id,
            "inbox_message_id": self.inbox_message_id,
            "metadata": json.dumps(self.metadata),
            "created_at": to_db_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "ThreadMessage":
        """Create message from a DB row dict (or from a serialized audit copy)."""
        message_number = data.get("message_number")
        raw_id = data.get("id")
        return cls(
            id=int(raw_id) if raw_id is not None else None,  # type: ignore[arg-type]
            thread_id=str(data["thread_id"]),
            message_type=ThreadMessageType(int(data["message_type"])),  # type: ignore[arg-type]
            message_number=int(message_number) if message_number is not None else None,  # type: ignore[arg-type]
            user_id=str(data["user_id"]) if data.get("user_id") is not None else None,
            user_name=str(data.get("user_name") or ""),
            role_name=data.get("role_name"),  # type: ignore[arg-type]
            body=str(data.get("body") or ""),
            is_anonymous=bool(data.get("is_anonymous")),
            attachments=list(_load_json(data.get("attachments"), [])),  # type: ignore[call-overload]
            small_attachments=list(_load_json(data.get("small_attachments"), [])),  # type: ignore[call-overload]
            use_legacy_format=bool(data.get("use_legacy_format")),
            dm_channel_id=data.get("dm_channel_id"),  # type: ignore[arg-type]
            dm_message_id=data.get("dm_message_id"),  # type: ignore[arg-type]
            inbox_message_id=data.get("inbox_message_id"),  # type: ignore[arg-type]
            metadata=_load_json(data.get("metadata"), {}),  # type: ignore[arg-type]
            created_at=parse_iso_datetime(data.get("created_at")) or utc_now(),
        )


# Relay payloads. Adapters build these from platform objects so the core never
# touches the chat library directly.


@dataclass
class Attachment:
    id: str
    filename: str
    url: str
    size: int = 0
    content_type: Optional[str] = None


@dataclass
class Sticker:
    id: str
    name: str


@dataclass
class UserRef:
    """A platform user as seen by the relay."""

    id: str
    username: str
    global_name: Optional[str] = None
    created_at: Optional[datetime] = None
    bot: bool = False

    def display_name(self, use_display_names: bool) -> str:
        if use_display_names and self.global_name:
            return self.global_name
        return self.username


@dataclass
class StaffMember(UserRef):
    """A moderator replying from the inbox server."""

    nickname: Optional[str] = None
    highest_hoisted_role: Optional[str] = None


@dataclass
class GuildMembership:
    guild_id: str
    guild_name: str
    joined_at: Optional[datetime] = None
    nickname: Optional[str] = None
    role_names: list[str] = field(default_factory=list)


@dataclass
class MessageActivity:
    """Rich-presence invite attached to a DM."""

    kind: str  # join | join_request | spectate | listen | other
    party_id: Optional[str] = None
    application_name: Optional[str] = None


@dataclass
class ForwardedMessage:
    content: str = ""
    guild_name: Optional[str] = None
    url: Optional[str] = None
    created_at: Optional[datetime] = None
    attachments: list[Attachment] = field(default_factory=list)
    stickers: list[Sticker] = field(default_factory=list)
    embeds: list[JsonDict] = field(default_factory=list)


@dataclass
class IncomingMessage:  # pylint: disable=too-many-instance-attributes  # Platform message snapshot
    """A message received from a user DM or from a staff channel."""

    id: str
    channel_id: str
    author: UserRef
    content: str = ""
    attachments: list[Attachment] = field(default_factory=list)
    embeds: list[JsonDict] = field(default_factory=list)
    stickers: list[Sticker] = field(default_factory=list)
    reply_to_id: Optional[str] = None
    forwarded: Optional[ForwardedMessage] = None
    activity: Optional[MessageActivity] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class SentMessage:
    """Handle returned by the messaging collaborator for a delivered post."""

    id: str
    channel_id: str
    attachment_urls: list[str] = field(default_factory=list)


@dataclass
class MessageStats:
    received: int = 0
    replies: int = 0
    internal: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class OutgoingFile:
    """A file to upload with a post: either already hosted (url) or in memory (data)."""

    filename: str
    url: Optional[str] = None
    data: Optional[bytes] = None
