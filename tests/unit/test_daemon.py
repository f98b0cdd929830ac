"""Unit tests for the daemon process wrapper."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from modmail.daemon import DaemonLockError, ModmailDaemon


def test_second_instance_cannot_take_lock(tmp_path):
    pid_file = tmp_path / "modmail.pid"
    first = ModmailDaemon(pid_file=pid_file)
    second = ModmailDaemon(pid_file=pid_file)

    first._acquire_lock()
    try:
        with pytest.raises(DaemonLockError, match="already running"):
            second._acquire_lock()
    finally:
        first._release_lock()

    assert not pid_file.exists()


@pytest.mark.asyncio
async def test_recovery_continues_past_failing_thread(ctx):
    first = await ctx.db.create_thread("u1", "alice", "ch-1")
    second = await ctx.db.create_thread("u2", "bob", "ch-2")
    daemon = ModmailDaemon()
    daemon.ctx = ctx
    recovered: list[str] = []

    async def recover(controller):
        if controller.thread.id == first.id:
            raise RuntimeError("history unavailable")
        recovered.append(controller.thread.id)
        return 0

    with (
        patch("modmail.daemon.db", ctx.db),
        patch("modmail.daemon.ThreadController.recover_downtime_messages", new=recover),
    ):
        await daemon._recover_downtime_messages()

    assert recovered == [second.id]


@pytest.mark.asyncio
async def test_stop_tears_down_in_reverse_order():
    daemon = ModmailDaemon()
    calls: list[str] = []
    daemon.scanner = MagicMock(stop=AsyncMock(side_effect=lambda: calls.append("scanner")))
    daemon.messenger = MagicMock(stop=AsyncMock(side_effect=lambda: calls.append("messenger")))
    daemon.ctx = MagicMock()
    daemon.ctx.tasks.shutdown = AsyncMock(side_effect=lambda timeout: calls.append("tasks"))

    with patch("modmail.daemon.db") as fake_db:
        fake_db.close = AsyncMock(side_effect=lambda: calls.append("db"))
        await daemon.stop()

    assert calls == ["scanner", "messenger", "tasks", "db"]
