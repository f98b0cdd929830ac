"""Add the per-thread reply counter and seed it from existing replies."""

# mypy: disable-error-code="misc"
# Migration files handle untyped sqlite rows

from typing import cast

import aiosqlite
from instrukt_ai_logging import get_logger

from modmail.core.migrations.constants import COLUMN_NEXT_MESSAGE_NUMBER

logger = get_logger(__name__)


async def up(db: aiosqlite.Connection) -> None:
    """Add next_message_number if missing, then backfill it past the highest used number."""
    cursor = await db.execute("PRAGMA table_info(threads)")
    rows = await cursor.fetchall()
    existing_columns = {cast(str, row[1]) for row in rows}

    if COLUMN_NEXT_MESSAGE_NUMBER in existing_columns:
        return

    await db.execute("ALTER TABLE threads ADD COLUMN next_message_number INTEGER NOT NULL DEFAULT 1")
    await db.execute("""
        UPDATE threads SET next_message_number = COALESCE(
            (SELECT MAX(message_number) FROM thread_messages WHERE thread_messages.thread_id = threads.id),
            0
        ) + 1
    """)
    await db.commit()
    logger.info("Added next_message_number column to threads table")
