"""Modmail daemon - wires the database, the Discord messenger and the scanner."""

from __future__ import annotations

import asyncio
import atexit
import fcntl
import os
import signal
import sys
from pathlib import Path
from typing import Optional, TextIO

from instrukt_ai_logging import get_logger

from modmail.adapters.discord_messenger import DiscordMessenger
from modmail.config import config
from modmail.core.context import ModmailContext, build_context
from modmail.core.db import db
from modmail.core.scanner import ScheduledTransitionScanner
from modmail.core.thread import ThreadController
from modmail.logging_config import setup_logging

logger = get_logger(__name__)

SHUTDOWN_TIMEOUT_S = 5.0


class DaemonLockError(Exception):
    """Another daemon instance holds the lock."""


class ModmailDaemon:
    """Single-instance relay process."""

    def __init__(self, pid_file: Optional[Path] = None) -> None:
        project_root = Path(__file__).parent.parent
        self.pid_file = pid_file or project_root / "modmail.pid"
        self.pid_file_handle: Optional[TextIO] = None
        self.shutdown_event = asyncio.Event()
        self.messenger: Optional[DiscordMessenger] = None
        self.ctx: Optional[ModmailContext] = None
        self.scanner: Optional[ScheduledTransitionScanner] = None

    async def start(self) -> None:
        """Open the database, connect to Discord, start the scanner and recover missed DMs."""
        await db.initialize()

        self.messenger = DiscordMessenger(
            config.discord.token,
            inbox_server_id=config.discord.inbox_server_id,
            main_server_ids=config.discord.main_server_ids,
        )
        self.ctx = build_context(config, db, self.messenger)
        self.messenger.task_registry = self.ctx.tasks
        self.messenger.bind(self.ctx)
        await self.messenger.start()

        self.scanner = ScheduledTransitionScanner(self.ctx)
        self.scanner.start()

        await self._recover_downtime_messages()
        logger.info("Modmail daemon started")

    async def _recover_downtime_messages(self) -> None:
        if self.ctx is None:
            return
        for thread in await db.get_open_threads():
            try:
                await ThreadController(self.ctx, thread).recover_downtime_messages()
            except Exception as e:  # pylint: disable=broad-exception-caught  # Recovery is best-effort per thread
                logger.error("Downtime recovery failed for thread %s: %s", thread.id[:8], e, exc_info=True)

    async def stop(self) -> None:
        """Stop everything started by start(), in reverse order."""
        if self.scanner:
            await self.scanner.stop()
        if self.messenger:
            await self.messenger.stop()
        if self.ctx:
            await self.ctx.tasks.shutdown(timeout=SHUTDOWN_TIMEOUT_S)
        await db.close()
        logger.info("Modmail daemon stopped")

    def _acquire_lock(self) -> None:
        """Acquire the single-instance lock (fcntl advisory lock on the PID file).

        Raises:
            DaemonLockError: If another daemon instance is already running
        """
        try:
            # "a+" keeps the inode even if the file was deleted, so the lock stays effective
            self.pid_file_handle = open(self.pid_file, "a+", encoding="utf-8")

            try:
                fcntl.flock(self.pid_file_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                self.pid_file_handle.close()
                self.pid_file_handle = None
                try:
                    existing_pid = self.pid_file.read_text().strip()
                except OSError:
                    existing_pid = "unknown"
                raise DaemonLockError(
                    f"Another daemon instance is already running (PID: {existing_pid}). "
                    f"Stop it first or remove {self.pid_file} if it's stale."
                ) from exc

            self.pid_file_handle.seek(0)
            self.pid_file_handle.truncate()
            self.pid_file_handle.write(str(os.getpid()))
            self.pid_file_handle.flush()
            logger.debug("Acquired daemon lock (PID: %s)", os.getpid())
            atexit.register(self._release_lock)

        except OSError as e:
            if self.pid_file_handle:
                self.pid_file_handle.close()
                self.pid_file_handle = None
            raise DaemonLockError(f"Failed to acquire lock: {e}") from e

    def _release_lock(self) -> None:
        try:
            if self.pid_file_handle:
                self.pid_file_handle.close()
                self.pid_file_handle = None
                logger.debug("Released daemon lock")
            if self.pid_file.exists():
                self.pid_file.unlink()
        except OSError as e:
            logger.error("Failed to release lock: %s", e)


async def main() -> None:
    """Main entry point."""
    setup_logging(level=os.getenv("MODMAIL_LOG_LEVEL"))

    daemon = ModmailDaemon()

    def signal_handler(signum: int, _frame: object) -> None:
        logger.info("Received %s signal...", signal.Signals(signum).name)
        daemon.shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        daemon._acquire_lock()
        await daemon.start()
        await daemon.shutdown_event.wait()
    except DaemonLockError as e:
        logger.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal...")
    except Exception as e:  # pylint: disable=broad-exception-caught  # Top-level guard logs and exits non-zero
        logger.error("Unexpected error: %s", e, exc_info=True)
        sys.exit(1)
    finally:
        try:
            await daemon.stop()
        except Exception as e:  # pylint: disable=broad-exception-caught  # Shutdown continues to release the lock
            logger.error("Error during daemon stop: %s", e)
        finally:
            daemon._release_lock()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
