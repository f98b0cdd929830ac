"""Polling loop that applies due scheduled closes and suspensions."""

from __future__ import annotations

import asyncio
from typing import Optional

from instrukt_ai_logging import get_logger

from modmail.core.context import ModmailContext
from modmail.core.errors import DeliveryFailure
from modmail.core.models import OutgoingFile, Thread
from modmail.core.thread import ThreadController

logger = get_logger(__name__)


class ScheduledTransitionScanner:
    """Background scanner for scheduled thread transitions.

    The next tick is armed only after the previous one finished, so runs never
    overlap. Cancelling a schedule is just clearing its fields; a thread whose
    schedule was cleared is simply not returned by the next query.
    """

    def __init__(self, ctx: ModmailContext, poll_interval_s: Optional[float] = None) -> None:
        self.ctx = ctx
        self.poll_interval_s = poll_interval_s if poll_interval_s is not None else ctx.config.scanner.poll_interval_s
        self._task: Optional[asyncio.Task[None]] = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(), name="scheduled-transition-scanner")
        logger.info("Scheduled transition scanner started (interval=%.1fs)", self.poll_interval_s)

    async def stop(self) -> None:
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduled transition scanner stopped")

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:  # pylint: disable=broad-exception-caught  # Next tick must still run
                logger.error("Error in scheduled transition scan: %s", exc, exc_info=True)
            await asyncio.sleep(self.poll_interval_s)

    async def run_once(self) -> tuple[int, int]:
        """Apply every due close, then every due suspension.

        Returns:
            (closed, suspended) counts for this tick
        """
        closed = 0
        for thread in await self.ctx.db.get_threads_due_to_close():
            try:
                await self._close_scheduled(thread)
                closed += 1
            except Exception as exc:  # pylint: disable=broad-exception-caught  # One bad thread must not stall the rest
                logger.error("Failed to close thread %s as scheduled: %s", thread.id[:8], exc, exc_info=True)

        suspended = 0
        for thread in await self.ctx.db.get_threads_due_to_suspend():
            try:
                await self._suspend_scheduled(thread)
                suspended += 1
            except Exception as exc:  # pylint: disable=broad-exception-caught  # One bad thread must not stall the rest
                logger.error("Failed to suspend thread %s as scheduled: %s", thread.id[:8], exc, exc_info=True)

        return closed, suspended

    async def _close_scheduled(self, thread: Thread) -> None:
        controller = ThreadController(self.ctx, thread)
        closer_id = thread.scheduled_close_id
        closer_name = thread.scheduled_close_name
        silent = thread.scheduled_close_silent

        close_message = self.ctx.config.relay.close_message
        if close_message and not silent:
            try:
                await controller.send_system_message_to_user(close_message)
            except DeliveryFailure as e:
                logger.warning("Close message for thread %s not delivered: %s", thread.id[:8], e)

        await controller.close(silent=silent)
        logger.info("Closed thread #%d as scheduled by %s", thread.thread_number, closer_name)
        # Pick up the log locator saved by the after-close hook
        closed_thread = await controller.refresh()
        await self.send_close_notification(closed_thread, closer_id, closer_name)

    async def send_close_notification(
        self, thread: Thread, closer_id: Optional[str], closer_name: Optional[str]
    ) -> None:
        """Post the closed-thread summary to the log channel, if one is configured."""
        log_channel_id = self.ctx.config.discord.log_channel_id
        if not log_channel_id:
            return

        stats = await self.ctx.db.get_message_stats(thread.id)
        lines = [
            f"Modmail thread #{thread.thread_number} with {thread.user_name} ({thread.user_id}) "
            f"was closed as scheduled by {closer_name} ({closer_id})",
            f"**{stats.received}** messages from the user, **{stats.replies}** messages to the user "
            f"and **{stats.internal}** internal chat messages.",
        ]

        files: list[OutgoingFile] = []
        log_url = await self.ctx.logs.get_log_url(thread)
        if log_url:
            lines.append(f"Logs: {log_url}")
        else:
            log_file = await self.ctx.logs.get_log_file(thread)
            if log_file:
                files.append(OutgoingFile(filename=log_file.name, data=log_file.content.encode("utf-8")))

        try:
            await self.ctx.messenger.send(log_channel_id, "\n".join(lines), files=files)
        except DeliveryFailure as e:
            logger.warning("Close notification for thread %s not posted: %s", thread.id[:8], e)

    async def _suspend_scheduled(self, thread: Thread) -> None:
        controller = ThreadController(self.ctx, thread)
        suspender_name = thread.scheduled_suspend_name
        await controller.suspend()
        await controller.post_system_message(
            f"**Thread suspended** as scheduled by {suspender_name}. This thread will act as closed until "
            f"unsuspended with `{self.ctx.config.relay.prefix}unsuspend`"
        )
