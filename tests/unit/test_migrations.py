"""Unit tests for the migration runner."""

import aiosqlite
import pytest

from modmail.core.migrations.runner import discover_migrations, run_pending_migrations

LEGACY_SCHEMA = """
CREATE TABLE threads (
    id TEXT PRIMARY KEY,
    thread_number INTEGER NOT NULL UNIQUE,
    status INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE thread_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    thread_id TEXT NOT NULL,
    message_type INTEGER NOT NULL,
    message_number INTEGER,
    body TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);
INSERT INTO threads VALUES ('t1', 1, 1, 'u1', 'ch-1', '2024-01-01T00:00:00.000000+00:00');
INSERT INTO threads VALUES ('t2', 2, 1, 'u2', 'ch-2', '2024-01-01T00:00:00.000000+00:00');
INSERT INTO thread_messages (thread_id, message_type, message_number, created_at)
    VALUES ('t1', 4, 1, '2024-01-01T00:00:01.000000+00:00');
INSERT INTO thread_messages (thread_id, message_type, message_number, created_at)
    VALUES ('t1', 4, 7, '2024-01-01T00:00:02.000000+00:00');
"""


async def _columns(conn: aiosqlite.Connection, table: str) -> set[str]:
    cursor = await conn.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in await cursor.fetchall()}


class TestRunPendingMigrations:
    """Tests for run_pending_migrations."""

    @pytest.mark.asyncio
    async def test_upgrades_legacy_database(self, tmp_path):
        async with aiosqlite.connect(str(tmp_path / "legacy.db")) as conn:
            await conn.executescript(LEGACY_SCHEMA)
            await conn.commit()

            applied = await run_pending_migrations(conn)

            assert applied == 2
            assert "next_message_number" in await _columns(conn, "threads")
            assert "inbox_message_id" in await _columns(conn, "thread_messages")

            cursor = await conn.execute("SELECT id, next_message_number FROM threads ORDER BY id")
            counters = {row[0]: row[1] for row in await cursor.fetchall()}
            # Numbering continues after the highest number already used
            assert counters == {"t1": 8, "t2": 1}

    @pytest.mark.asyncio
    async def test_second_run_applies_nothing(self, tmp_path):
        async with aiosqlite.connect(str(tmp_path / "legacy.db")) as conn:
            await conn.executescript(LEGACY_SCHEMA)
            await conn.commit()

            await run_pending_migrations(conn)

            assert await run_pending_migrations(conn) == 0

    @pytest.mark.asyncio
    async def test_fresh_schema_is_left_alone(self, test_db):
        cursor = await test_db.conn.execute("SELECT version FROM schema_migrations ORDER BY version")
        versions = [row["version"] for row in await cursor.fetchall()]

        assert versions == ["001_add_next_message_number", "002_add_inbox_message_id"]
        assert await run_pending_migrations(test_db.conn) == 0


class TestMigrationDirectory:
    """Tests for discovering and loading migration modules."""

    def test_discovery_is_ordered_and_skips_other_files(self, tmp_path):
        for name in ("002_second.py", "001_first.py", "__init__.py", "helpers.py", "010_tenth.py"):
            (tmp_path / name).write_text("async def up(db):\n    pass\n", encoding="utf-8")

        versions = [m.version for m in discover_migrations(tmp_path)]

        assert versions == ["001_first", "002_second", "010_tenth"]

    @pytest.mark.asyncio
    async def test_pending_migrations_run_in_order(self, tmp_path):
        (tmp_path / "001_create.py").write_text(
            "async def up(db):\n    await db.execute('CREATE TABLE notes_t (body TEXT)')\n", encoding="utf-8"
        )
        (tmp_path / "002_seed.py").write_text(
            "async def up(db):\n    await db.execute(\"INSERT INTO notes_t VALUES ('hi')\")\n", encoding="utf-8"
        )

        async with aiosqlite.connect(str(tmp_path / "m.db")) as conn:
            assert await run_pending_migrations(conn, tmp_path) == 2
            assert await run_pending_migrations(conn, tmp_path) == 0

            cursor = await conn.execute("SELECT body FROM notes_t")
            assert [row[0] for row in await cursor.fetchall()] == ["hi"]

    @pytest.mark.asyncio
    async def test_migration_without_up_stops_the_run(self, tmp_path):
        (tmp_path / "001_broken.py").write_text("VALUE = 1\n", encoding="utf-8")
        (tmp_path / "002_never.py").write_text("async def up(db):\n    pass\n", encoding="utf-8")

        async with aiosqlite.connect(str(tmp_path / "m.db")) as conn:
            with pytest.raises(RuntimeError, match="001_broken has no up"):
                await run_pending_migrations(conn, tmp_path)

            cursor = await conn.execute("SELECT version FROM schema_migrations")
            assert await cursor.fetchall() == []
