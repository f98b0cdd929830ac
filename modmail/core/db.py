"""Database manager for modmail - thread and thread-message persistence."""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence

import aiosqlite
from instrukt_ai_logging import get_logger

from modmail.config import config

from .dates import to_db_timestamp, utc_now
from .errors import NotFoundError
from .migrations.runner import run_pending_migrations
from .models import MessageStats, Thread, ThreadMessage, ThreadMessageType, ThreadStatus

logger = get_logger(__name__)

# Message kinds that were actually exchanged with the user
_RELAYED_TYPES = (
    int(ThreadMessageType.FROM_USER),
    int(ThreadMessageType.TO_USER),
    int(ThreadMessageType.SYSTEM_TO_USER),
)


def _serialize(value: object) -> object:
    """Convert a Python value into something sqlite stores."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_db_timestamp(value)
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


class Db:
    """Database interface for threads, their messages, and staff-side lookup tables."""

    def __init__(self, db_path: str) -> None:
        """Initialize database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        # One connection is shared by every coroutine; writes and their commits
        # must not interleave with an open multi-statement transaction.
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the database, apply the schema, then run pending migrations."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()

        await self._db.executescript(schema_sql)
        await self._db.commit()

        applied = await run_pending_migrations(self._db)
        if applied:
            logger.info("Applied %d database migrations", applied)

    @property
    def conn(self) -> aiosqlite.Connection:
        """Get database connection, asserting it's initialized.

        Returns:
            Active database connection

        Raises:
            RuntimeError: If database not initialized
        """
        if self._db is None:
            raise RuntimeError("Database not initialized - call initialize() first")
        return self._db

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def _write(self, sql: str, params: Sequence[object] = ()) -> int:
        """Execute one write statement and commit it.

        Returns:
            Number of affected rows
        """
        async with self._write_lock:
            cursor = await self.conn.execute(sql, params)
            await self.conn.commit()
            return cursor.rowcount

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run several statements atomically; commits on success, rolls back on error."""
        async with self._write_lock:
            try:
                yield self.conn
            except BaseException:
                await self.conn.rollback()
                raise
            await self.conn.commit()

    # Threads

    async def create_thread(
        self,
        user_id: str,
        user_name: str,
        channel_id: str,
        *,
        metadata: Optional[dict[str, object]] = None,
    ) -> Thread:
        """Insert a new open thread.

        `thread_number` is computed inside the INSERT itself, so numbers stay
        unique and strictly increasing even if callers were not serialized.

        Args:
            user_id: Platform id of the user
            user_name: User's name at creation time
            channel_id: Staff-side channel id
            metadata: Optional free-form metadata

        Returns:
            Created Thread
        """
        thread_id = str(uuid.uuid4())
        now = utc_now()
        await self._write(
            """
            INSERT INTO threads (
                id, thread_number, status, user_id, user_name, channel_id,
                next_message_number, alert_ids, log_storage_data, metadata, created_at
            )
            SELECT ?, COALESCE(MAX(thread_number), 0) + 1, ?, ?, ?, ?, 1, '[]', '{}', ?, ?
            FROM threads
            """,
            (
                thread_id,
                int(ThreadStatus.OPEN),
                user_id,
                user_name,
                channel_id,
                json.dumps(metadata or {}),
                to_db_timestamp(now),
            ),
        )

        thread = await self.get_thread(thread_id)
        if thread is None:
            raise RuntimeError(f"Thread {thread_id} vanished right after insert")
        logger.info("Created thread #%d (%s) for user %s", thread.thread_number, thread_id[:8], user_id)
        return thread

    async def _fetch_thread(self, query: str, params: Sequence[object]) -> Optional[Thread]:
        cursor = await self.conn.execute(query, params)
        row = await cursor.fetchone()
        if not row:
            return None
        return Thread.from_dict(dict(row))

    async def _fetch_threads(self, query: str, params: Sequence[object]) -> list[Thread]:
        cursor = await self.conn.execute(query, params)
        rows = await cursor.fetchall()
        return [Thread.from_dict(dict(row)) for row in rows]

    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        """Get thread by ID."""
        return await self._fetch_thread("SELECT * FROM threads WHERE id = ?", (thread_id,))

    async def find_open_thread_by_user(self, user_id: str) -> Optional[Thread]:
        """Get the user's open thread, if any."""
        return await self._fetch_thread(
            "SELECT * FROM threads WHERE user_id = ? AND status = ?",
            (user_id, int(ThreadStatus.OPEN)),
        )

    async def find_thread_by_channel(self, channel_id: str) -> Optional[Thread]:
        """Get the most recent thread bound to a staff channel, whatever its status."""
        return await self._fetch_thread(
            "SELECT * FROM threads WHERE channel_id = ? ORDER BY created_at DESC LIMIT 1",
            (channel_id,),
        )

    async def find_open_thread_by_channel(self, channel_id: str) -> Optional[Thread]:
        return await self._fetch_thread(
            "SELECT * FROM threads WHERE channel_id = ? AND status = ?",
            (channel_id, int(ThreadStatus.OPEN)),
        )

    async def find_suspended_thread_by_channel(self, channel_id: str) -> Optional[Thread]:
        return await self._fetch_thread(
            "SELECT * FROM threads WHERE channel_id = ? AND status = ?",
            (channel_id, int(ThreadStatus.SUSPENDED)),
        )

    async def get_open_threads(self) -> list[Thread]:
        return await self._fetch_threads(
            "SELECT * FROM threads WHERE status = ? ORDER BY thread_number", (int(ThreadStatus.OPEN),)
        )

    async def get_threads_due_to_close(self, now: Optional[datetime] = None) -> list[Thread]:
        """Open threads whose scheduled close time has elapsed."""
        return await self._fetch_threads(
            """
            SELECT * FROM threads
            WHERE status = ? AND scheduled_close_at IS NOT NULL AND scheduled_close_at <= ?
            ORDER BY scheduled_close_at
            """,
            (int(ThreadStatus.OPEN), to_db_timestamp(now or utc_now())),
        )

    async def get_threads_due_to_suspend(self, now: Optional[datetime] = None) -> list[Thread]:
        """Open threads whose scheduled suspend time has elapsed."""
        return await self._fetch_threads(
            """
            SELECT * FROM threads
            WHERE status = ? AND scheduled_suspend_at IS NOT NULL AND scheduled_suspend_at <= ?
            ORDER BY scheduled_suspend_at
            """,
            (int(ThreadStatus.OPEN), to_db_timestamp(now or utc_now())),
        )

    async def get_closed_threads_by_user(self, user_id: str, page: int = 1, limit: int = 10) -> list[Thread]:
        """Closed threads for a user, newest first.

        Args:
            user_id: User to look up
            page: 1-based page number
            limit: Page size
        """
        return await self._fetch_threads(
            "SELECT * FROM threads WHERE user_id = ? AND status = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (user_id, int(ThreadStatus.CLOSED), limit, (max(page, 1) - 1) * limit),
        )

    async def count_closed_threads_by_user(self, user_id: str) -> int:
        cursor = await self.conn.execute(
            "SELECT COUNT(*) AS count FROM threads WHERE user_id = ? AND status = ?",
            (user_id, int(ThreadStatus.CLOSED)),
        )
        row = await cursor.fetchone()
        return int(row["count"]) if row else 0

    async def get_user_thread_number(self, thread: Thread) -> int:
        """1-based ordinal of this thread among all threads of the same user."""
        cursor = await self.conn.execute(
            "SELECT COUNT(*) AS count FROM threads WHERE user_id = ? AND thread_number <= ?",
            (thread.user_id, thread.thread_number),
        )
        row = await cursor.fetchone()
        return int(row["count"]) if row else 0

    async def update_thread(self, thread_id: str, **fields: object) -> None:
        """Update thread columns.

        Args:
            thread_id: Thread ID
            **fields: Column values; enums, datetimes, bools and JSON values are serialized
        """
        if not fields:
            return

        set_clause = ", ".join(f"{key} = ?" for key in fields)
        values = [_serialize(value) for value in fields.values()] + [thread_id]
        await self._write(f"UPDATE threads SET {set_clause} WHERE id = ?", values)

    async def allocate_message_number(self, thread_id: str) -> int:
        """Atomically take the thread's next reply number and advance the counter.

        Raises:
            NotFoundError: If the thread does not exist
        """
        async with self._write_lock:
            cursor = await self.conn.execute(
                """
                UPDATE threads SET next_message_number = next_message_number + 1
                WHERE id = ?
                RETURNING next_message_number - 1 AS allocated
                """,
                (thread_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            await self.conn.commit()

        if row is None:
            raise NotFoundError(f"Thread {thread_id} not found")
        return int(row["allocated"])

    async def reset_thread_id(self, thread_id: str) -> str:
        """Re-key a thread and every message that belongs to it.

        Returns:
            The new thread id
        """
        new_id = str(uuid.uuid4())
        async with self.transaction() as conn:
            await conn.execute("UPDATE thread_messages SET thread_id = ? WHERE thread_id = ?", (new_id, thread_id))
            cursor = await conn.execute("UPDATE threads SET id = ? WHERE id = ?", (new_id, thread_id))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Thread {thread_id} not found")
        logger.info("Reset thread id %s -> %s", thread_id[:8], new_id[:8])
        return new_id

    async def add_alert(self, thread_id: str, user_id: str) -> None:
        """Add a moderator to the alert set (no-op if already present)."""
        await self._write(
            """
            UPDATE threads SET alert_ids = json_insert(alert_ids, '$[#]', ?)
            WHERE id = ? AND NOT EXISTS (SELECT 1 FROM json_each(threads.alert_ids) WHERE value = ?)
            """,
            (user_id, thread_id, user_id),
        )

    async def remove_alert(self, thread_id: str, user_id: str) -> None:
        await self._write(
            """
            UPDATE threads SET alert_ids = (
                SELECT json_group_array(value) FROM json_each(threads.alert_ids) WHERE value != ?
            )
            WHERE id = ?
            """,
            (user_id, thread_id),
        )

    async def clear_alerts(self, thread_id: str) -> None:
        await self._write("UPDATE threads SET alert_ids = '[]' WHERE id = ?", (thread_id,))

    # Thread messages

    async def add_thread_message(self, message: ThreadMessage) -> ThreadMessage:
        """Insert a message and return it with its row id set."""
        data = message.to_dict()
        data.pop("id")
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        async with self._write_lock:
            cursor = await self.conn.execute(
                f"INSERT INTO thread_messages ({columns}) VALUES ({placeholders})",
                list(data.values()),
            )
            await self.conn.commit()
        message.id = cursor.lastrowid
        return message

    async def update_thread_message(self, message_id: int, **fields: object) -> None:
        if not fields:
            return
        set_clause = ", ".join(f"{key} = ?" for key in fields)
        values = [_serialize(value) for value in fields.values()] + [message_id]
        await self._write(f"UPDATE thread_messages SET {set_clause} WHERE id = ?", values)

    async def delete_thread_message(self, message_id: int) -> None:
        await self._write("DELETE FROM thread_messages WHERE id = ?", (message_id,))

    async def _fetch_message(self, query: str, params: Sequence[object]) -> Optional[ThreadMessage]:
        cursor = await self.conn.execute(query, params)
        row = await cursor.fetchone()
        if not row:
            return None
        return ThreadMessage.from_dict(dict(row))

    async def get_thread_message(self, message_id: int) -> Optional[ThreadMessage]:
        return await self._fetch_message("SELECT * FROM thread_messages WHERE id = ?", (message_id,))

    async def get_thread_messages(self, thread_id: str) -> list[ThreadMessage]:
        """All messages of a thread in transcript order."""
        cursor = await self.conn.execute(
            "SELECT * FROM thread_messages WHERE thread_id = ? ORDER BY created_at ASC, id ASC",
            (thread_id,),
        )
        rows = await cursor.fetchall()
        return [ThreadMessage.from_dict(dict(row)) for row in rows]

    async def find_message_by_dm_message_id(
        self, dm_message_id: str, thread_id: Optional[str] = None
    ) -> Optional[ThreadMessage]:
        """Look up by user-side message id, optionally scoped to one thread."""
        if thread_id is None:
            return await self._fetch_message(
                "SELECT * FROM thread_messages WHERE dm_message_id = ? ORDER BY id DESC LIMIT 1",
                (dm_message_id,),
            )
        return await self._fetch_message(
            "SELECT * FROM thread_messages WHERE thread_id = ? AND dm_message_id = ?",
            (thread_id, dm_message_id),
        )

    async def find_message_for_message_id(self, thread_id: str, message_id: str) -> Optional[ThreadMessage]:
        """Look up by either side's message id."""
        return await self._fetch_message(
            """
            SELECT * FROM thread_messages
            WHERE thread_id = ? AND (dm_message_id = ? OR inbox_message_id = ?)
            ORDER BY id LIMIT 1
            """,
            (thread_id, message_id, message_id),
        )

    async def find_message_by_number(self, thread_id: str, message_number: int) -> Optional[ThreadMessage]:
        return await self._fetch_message(
            "SELECT * FROM thread_messages WHERE thread_id = ? AND message_number = ?",
            (thread_id, message_number),
        )

    async def get_latest_relayed_message(self, thread_id: str) -> Optional[ThreadMessage]:
        """Most recent message exchanged with the user (either direction)."""
        return await self._fetch_message(
            f"""
            SELECT * FROM thread_messages
            WHERE thread_id = ? AND message_type IN ({", ".join("?" for _ in _RELAYED_TYPES)})
            ORDER BY created_at DESC, id DESC LIMIT 1
            """,
            (thread_id, *_RELAYED_TYPES),
        )

    async def update_message_body_by_dm_id(self, thread_id: str, dm_message_id: str, body: str) -> int:
        return await self._write(
            "UPDATE thread_messages SET body = ? WHERE thread_id = ? AND dm_message_id = ?",
            (body, thread_id, dm_message_id),
        )

    async def delete_message_by_dm_id(self, thread_id: str, dm_message_id: str) -> int:
        return await self._write(
            "DELETE FROM thread_messages WHERE thread_id = ? AND dm_message_id = ?",
            (thread_id, dm_message_id),
        )

    async def get_message_stats(self, thread_id: str) -> MessageStats:
        """Counts of user messages, staff replies, and internal chat."""
        cursor = await self.conn.execute(
            "SELECT message_type, COUNT(*) AS count FROM thread_messages WHERE thread_id = ? GROUP BY message_type",
            (thread_id,),
        )
        counts = {int(row["message_type"]): int(row["count"]) for row in await cursor.fetchall()}
        return MessageStats(
            received=counts.get(int(ThreadMessageType.FROM_USER), 0),
            replies=counts.get(int(ThreadMessageType.TO_USER), 0),
            internal=counts.get(int(ThreadMessageType.CHAT), 0),
        )

    # Snippets

    async def get_snippet(self, trigger: str) -> Optional[str]:
        cursor = await self.conn.execute("SELECT body FROM snippets WHERE trigger = ?", (trigger.lower(),))
        row = await cursor.fetchone()
        return str(row["body"]) if row else None

    async def add_snippet(self, trigger: str, body: str, created_by: Optional[str] = None) -> None:
        await self._write(
            "INSERT OR REPLACE INTO snippets (trigger, body, created_by, created_at) VALUES (?, ?, ?, ?)",
            (trigger.lower(), body, created_by, to_db_timestamp(utc_now())),
        )

    async def delete_snippet(self, trigger: str) -> bool:
        return await self._write("DELETE FROM snippets WHERE trigger = ?", (trigger.lower(),)) > 0

    async def get_all_snippets(self) -> dict[str, str]:
        """All snippets keyed by lowercase trigger."""
        cursor = await self.conn.execute("SELECT trigger, body FROM snippets ORDER BY trigger")
        return {str(row["trigger"]): str(row["body"]) for row in await cursor.fetchall()}

    # Moderator display-role overrides

    async def get_moderator_role_override(self, moderator_id: str) -> Optional[str]:
        cursor = await self.conn.execute(
            "SELECT role_name FROM moderator_role_overrides WHERE moderator_id = ?", (moderator_id,)
        )
        row = await cursor.fetchone()
        return str(row["role_name"]) if row else None

    async def set_moderator_role_override(self, moderator_id: str, role_id: str, role_name: str) -> None:
        await self._write(
            "INSERT OR REPLACE INTO moderator_role_overrides (moderator_id, role_id, role_name) VALUES (?, ?, ?)",
            (moderator_id, role_id, role_name),
        )

    async def reset_moderator_role_override(self, moderator_id: str) -> None:
        await self._write("DELETE FROM moderator_role_overrides WHERE moderator_id = ?", (moderator_id,))

    # Blocked users

    async def block_user(
        self,
        user_id: str,
        user_name: str,
        blocked_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        await self._write(
            """
            INSERT OR REPLACE INTO blocked_users (user_id, user_name, blocked_by, blocked_at, expires_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                user_id,
                user_name,
                blocked_by,
                to_db_timestamp(utc_now()),
                to_db_timestamp(expires_at) if expires_at else None,
            ),
        )

    async def unblock_user(self, user_id: str) -> None:
        await self._write("DELETE FROM blocked_users WHERE user_id = ?", (user_id,))

    async def is_blocked(self, user_id: str, now: Optional[datetime] = None) -> bool:
        """Whether the user is blocked; expired blocks do not count."""
        cursor = await self.conn.execute(
            "SELECT 1 FROM blocked_users WHERE user_id = ? AND (expires_at IS NULL OR expires_at > ?)",
            (user_id, to_db_timestamp(now or utc_now())),
        )
        return await cursor.fetchone() is not None

    # Notes

    async def add_note(self, user_id: str, author_id: str, body: str) -> None:
        await self._write(
            "INSERT INTO notes (user_id, author_id, body, created_at) VALUES (?, ?, ?, ?)",
            (user_id, author_id, body, to_db_timestamp(utc_now())),
        )

    async def count_notes(self, user_id: str) -> int:
        cursor = await self.conn.execute("SELECT COUNT(*) AS count FROM notes WHERE user_id = ?", (user_id,))
        row = await cursor.fetchone()
        return int(row["count"]) if row else 0


db = Db(config.database.path)
