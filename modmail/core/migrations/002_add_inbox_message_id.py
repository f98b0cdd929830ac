"""Add inbox_message_id to thread_messages for staff-side edit/delete sync."""

# mypy: disable-error-code="misc"
# Migration files handle untyped sqlite rows

from typing import cast

import aiosqlite
from instrukt_ai_logging import get_logger

from modmail.core.migrations.constants import COLUMN_INBOX_MESSAGE_ID

logger = get_logger(__name__)


async def up(db: aiosqlite.Connection) -> None:
    """Add inbox_message_id column if it doesn't exist, and index it."""
    cursor = await db.execute("PRAGMA table_info(thread_messages)")
    rows = await cursor.fetchall()
    existing_columns = {cast(str, row[1]) for row in rows}

    if COLUMN_INBOX_MESSAGE_ID not in existing_columns:
        await db.execute("ALTER TABLE thread_messages ADD COLUMN inbox_message_id TEXT")
        logger.info("Added inbox_message_id column to thread_messages table")

    await db.execute("CREATE INDEX IF NOT EXISTS idx_thread_messages_inbox ON thread_messages(inbox_message_id)")
    await db.commit()
