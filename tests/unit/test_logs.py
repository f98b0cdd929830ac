"""Unit tests for transcript rendering and log storage."""

from datetime import datetime, timedelta, timezone

import pytest

from modmail.config import LogConfig, LogStorageType
from modmail.core.formatters import NEW_BODY_KEY, ORIGINAL_MESSAGE_KEY
from modmail.core.logs import (
    AttachmentLogStorage,
    LocalLogStorage,
    LogManager,
    NoneLogStorage,
    create_log_storage,
    format_log,
    format_log_line,
)
from modmail.core.models import Thread, ThreadMessage, ThreadMessageType, ThreadStatus

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _thread() -> Thread:
    return Thread(
        id="t1",
        thread_number=7,
        status=ThreadStatus.OPEN,
        user_id="u1",
        user_name="alice",
        channel_id="ch-1",
        created_at=START,
    )


def _message(kind: ThreadMessageType, body: str, seconds: int, **kwargs) -> ThreadMessage:
    return ThreadMessage(
        thread_id="t1",
        message_type=kind,
        body=body,
        created_at=START + timedelta(seconds=seconds),
        **kwargs,
    )


class TestFormatLog:
    """Tests for format_log and format_log_line."""

    def test_full_transcript(self):
        messages = [
            _message(ThreadMessageType.SYSTEM, "header", 0),
            _message(ThreadMessageType.FROM_USER, "help", 1, user_name="alice"),
            _message(ThreadMessageType.CHAT, "on it", 2, user_name="mod"),
            _message(ThreadMessageType.TO_USER, "hi", 3, user_name="mod", role_name="Staff", message_number=1),
        ]

        log = format_log(_thread(), messages)

        assert log == (
            "# Thread #7 with alice (u1) started at 2024-01-01 12:00:00\n\n"
            "[2024-01-01 12:00:00] [BOT] header\n"
            "[2024-01-01 12:00:01] [FROM USER] [alice] help\n"
            "[2024-01-01 12:00:02] [CHAT] [mod] on it\n"
            "[2024-01-01 12:00:03] [TO USER] [mod] (Staff) mod: hi"
        )

    def test_simple_keeps_only_relayed_messages_in_order(self):
        messages = [
            _message(ThreadMessageType.SYSTEM, "header", 0),
            _message(ThreadMessageType.FROM_USER, "first", 1, user_name="alice"),
            _message(ThreadMessageType.CHAT, "internal", 2, user_name="mod"),
            _message(ThreadMessageType.TO_USER, "reply", 3, user_name="mod"),
            _message(ThreadMessageType.FROM_USER, "second", 4, user_name="alice"),
        ]

        body = format_log(_thread(), messages, simple=True).split("\n\n", 1)[1]

        assert body.splitlines() == [
            "[2024-01-01 12:00:01] [FROM USER] [alice] first",
            "[2024-01-01 12:00:03] [TO USER] [mod] mod: reply",
            "[2024-01-01 12:00:04] [FROM USER] [alice] second",
        ]

    def test_verbose_includes_ids_and_numbers(self):
        message = _message(
            ThreadMessageType.TO_USER,
            "hi",
            0,
            user_name="mod",
            message_number=2,
            dm_channel_id="dmc",
            dm_message_id="dmm",
        )

        assert format_log_line(message, verbose=True) == (
            "[2024-01-01 12:00:00] [DM CHA dmc] [DM MSG dmm] [TO USER] [2] [mod] mod: hi"
        )

    def test_anonymous_and_audit_lines(self):
        anonymous = _message(ThreadMessageType.TO_USER, "hi", 0, user_name="mod", is_anonymous=True)
        original = _message(ThreadMessageType.TO_USER, "old", 0, user_name="mod", message_number=1)
        edited = _message(
            ThreadMessageType.REPLY_EDITED,
            "",
            1,
            metadata={ORIGINAL_MESSAGE_KEY: original.to_dict(), NEW_BODY_KEY: "new"},
        )

        assert format_log_line(anonymous).endswith("[TO USER] [mod] (Anonymous) Moderator: hi")
        assert format_log_line(edited) == (
            "[2024-01-01 12:00:01] [REPLY EDITED] mod edited reply 1:\n\nBefore:\nold\n\nAfter:\nnew"
        )

    def test_legacy_and_attachments(self):
        legacy = _message(ThreadMessageType.LEGACY, "old log text", 0)
        with_files = _message(
            ThreadMessageType.FROM_USER, "pic", 0, user_name="alice", attachments=["https://cdn.example/a.png"]
        )

        assert format_log_line(legacy) == "old log text"
        assert format_log_line(with_files).endswith("pic\n\nhttps://cdn.example/a.png")


class TestLogStorage:
    """Tests for the storage variants and LogManager."""

    def test_factory_picks_variant(self, tmp_path):
        assert isinstance(create_log_storage(LogConfig(LogStorageType.NONE, str(tmp_path)), "http://x"), NoneLogStorage)
        assert isinstance(create_log_storage(LogConfig(LogStorageType.LOCAL, str(tmp_path)), "http://x"), LocalLogStorage)
        assert isinstance(
            create_log_storage(LogConfig(LogStorageType.ATTACHMENT, str(tmp_path)), "http://x"), AttachmentLogStorage
        )

    @pytest.mark.asyncio
    async def test_local_storage_url(self, test_db):
        thread = await test_db.create_thread("u1", "alice", "ch-1")
        manager = LogManager(test_db, LocalLogStorage("http://logs.example/"))

        url = await manager.get_log_url(thread)

        assert url == f"http://logs.example/logs/{thread.id}"
        assert (await test_db.get_thread(thread.id)).log_storage_type == "local"

    @pytest.mark.asyncio
    async def test_attachment_storage_waits_for_close(self, test_db, tmp_path):
        thread = await test_db.create_thread("u1", "alice", "ch-1")
        await test_db.add_thread_message(
            ThreadMessage(thread_id=thread.id, message_type=ThreadMessageType.FROM_USER, user_name="alice", body="hi")
        )
        manager = LogManager(test_db, AttachmentLogStorage(str(tmp_path / "logs")))

        assert await manager.save_log_to_storage(thread) is False

        await test_db.update_thread(thread.id, status=ThreadStatus.CLOSED)
        closed = await test_db.get_thread(thread.id)
        log_file = await manager.get_log_file(closed)

        assert log_file is not None
        assert log_file.name == f"{thread.id}.txt"
        assert "[FROM USER] [alice] hi" in log_file.content
        assert await manager.get_log_url(closed) is None

    @pytest.mark.asyncio
    async def test_thread_keeps_storage_it_was_saved_with(self, test_db, tmp_path):
        thread = await test_db.create_thread("u1", "alice", "ch-1")
        local = LocalLogStorage("http://logs.example")
        await LogManager(test_db, local).save_log_to_storage(thread)

        manager = LogManager(test_db, NoneLogStorage(), variants={LogStorageType.LOCAL: local})
        reloaded = await test_db.get_thread(thread.id)

        assert await manager.get_log_url(reloaded) == f"http://logs.example/logs/{thread.id}"
