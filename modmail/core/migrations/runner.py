"""Applies numbered schema migrations that a database has not seen yet."""

import importlib.util
import re
from pathlib import Path
from typing import Awaitable, Callable, NamedTuple

import aiosqlite
from instrukt_ai_logging import get_logger

from modmail.core.migrations.constants import INIT_FILE_NAME

logger = get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).parent
MIGRATION_NAME = re.compile(r"^\d{3}_\w+\.py$")

UpFunc = Callable[[aiosqlite.Connection], Awaitable[None]]


class Migration(NamedTuple):
    version: str
    path: Path


def discover_migrations(directory: Path = MIGRATIONS_DIR) -> list[Migration]:
    """Numbered migration modules in the directory, oldest first."""
    paths = (p for p in directory.glob("*.py") if p.name != INIT_FILE_NAME and MIGRATION_NAME.match(p.name))
    return [Migration(p.stem, p) for p in sorted(paths)]


def load_up(migration: Migration) -> UpFunc:
    """Import a migration module and return its ``up`` coroutine function.

    Raises:
        RuntimeError: The module cannot be imported or defines no callable up()
    """
    spec = importlib.util.spec_from_file_location(f"modmail_migration_{migration.version}", migration.path)
    if spec is None or spec.loader is None:
        raise RuntimeError(f"Cannot load migration {migration.version}")

    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    up = getattr(module, "up", None)
    if not callable(up):
        raise RuntimeError(f"Migration {migration.version} has no up() function")
    return up  # type: ignore[no-any-return]


async def _ensure_ledger(db: aiosqlite.Connection) -> set[str]:
    await db.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations ("
        " version TEXT PRIMARY KEY,"
        " applied_at TEXT DEFAULT CURRENT_TIMESTAMP)"
    )
    await db.commit()
    cursor = await db.execute("SELECT version FROM schema_migrations")
    return {str(row[0]) for row in await cursor.fetchall()}


async def run_pending_migrations(db: aiosqlite.Connection, directory: Path = MIGRATIONS_DIR) -> int:
    """Apply every migration not yet recorded in ``schema_migrations``.

    Stops at the first migration that cannot be loaded, since later ones
    may build on it.

    Args:
        db: Database connection
        directory: Where the numbered migration modules live

    Returns:
        Number of migrations applied

    Raises:
        RuntimeError: A pending migration cannot be loaded
    """
    applied = await _ensure_ledger(db)
    pending = [m for m in discover_migrations(directory) if m.version not in applied]

    for migration in pending:
        up = load_up(migration)
        logger.info("Applying migration %s", migration.version)
        await up(db)
        await db.execute("INSERT INTO schema_migrations (version) VALUES (?)", (migration.version,))
        await db.commit()

    if pending:
        logger.info("Applied %d migration(s), now at %s", len(pending), pending[-1].version)
    return len(pending)
