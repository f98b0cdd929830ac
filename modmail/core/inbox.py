"""Routing of platform message events into thread operations.

The Discord adapter converts gateway events to IncomingMessage values and calls
these handlers; nothing here touches the chat library.
"""

from __future__ import annotations

from typing import Optional

from instrukt_ai_logging import get_logger

from modmail.constants import ACCIDENTAL_THREAD_MESSAGES
from modmail.core.context import ModmailContext
from modmail.core.errors import DeliveryFailure, PolicyDecline
from modmail.core.formatters import disable_link_previews, format_user_reply_thread_message
from modmail.core.models import IncomingMessage, Thread
from modmail.core.thread import ThreadController
from modmail.core.threads import CreateThreadOptions, create_thread_now

logger = get_logger(__name__)


def _is_accidental(msg: IncomingMessage) -> bool:
    return bool(msg.content) and msg.content.strip().lower() in ACCIDENTAL_THREAD_MESSAGES


async def handle_direct_message(ctx: ModmailContext, msg: IncomingMessage) -> Optional[Thread]:
    """Relay a user DM, opening a thread first when the user has none.

    Returns:
        The thread the message went to, or None if it was ignored
    """
    if msg.author.bot:
        return None

    if await ctx.db.is_blocked(msg.author.id):
        blocked_reply = ctx.config.discord.blocked_reply
        if blocked_reply:
            try:
                await ctx.messenger.send_dm(msg.author.id, blocked_reply)
            except DeliveryFailure as e:
                logger.debug("Blocked reply to %s not delivered: %s", msg.author.id, e)
        return None

    # Queued with thread creation so a burst of DMs opens exactly one thread
    return await ctx.creation_queue.submit(lambda: _route_direct_message(ctx, msg))


async def _route_direct_message(ctx: ModmailContext, msg: IncomingMessage) -> Optional[Thread]:
    relay = ctx.config.relay
    thread = await ctx.db.find_open_thread_by_user(msg.author.id)
    is_new = thread is None

    if thread is None:
        if relay.ignore_accidental_threads and _is_accidental(msg):
            logger.debug("Ignoring accidental thread opener from %s", msg.author.id)
            return None

        result = await create_thread_now(ctx, msg.author, CreateThreadOptions(source="dm", message=msg))
        if isinstance(result, PolicyDecline):
            return None
        thread = result

    controller = ThreadController(ctx, thread)
    await controller.receive_user_reply(msg)

    if is_new and relay.response_message and not controller.thread.is_closed():
        try:
            await controller.send_system_message_to_user(
                relay.response_message, post_to_thread_channel=relay.show_response_message_in_thread_channel
            )
        except DeliveryFailure as e:
            await controller.post_system_message(
                f"**NOTE:** Could not send auto-response to the user. The error given was: `{e}`"
            )

    return controller.thread


async def handle_message_edit(ctx: ModmailContext, msg: IncomingMessage, old_content: Optional[str] = None) -> None:
    """Mirror an edit of a relayed user DM or of logged staff chatter.

    Args:
        ctx: Service context
        msg: The message after the edit
        old_content: Content before the edit, when the platform still had it cached
    """
    if not msg.content:
        return

    logged = await ctx.db.find_message_by_dm_message_id(msg.id)
    if logged is None:
        return
    thread = await ctx.db.get_thread(logged.thread_id)
    if thread is None or thread.is_closed():
        return

    controller = ThreadController(ctx, thread)

    if logged.is_from_user():
        before = old_content if old_content is not None else logged.body
        after = msg.content
        if before == after:
            return

        notice = disable_link_previews(f"**The user edited their message:**\n`B:` {before}\n`A:` {after}")
        if not ctx.config.relay.update_messages_live:
            await controller.post_system_message(notice)
            return

        # Logs keep the original body; the edit is recorded as a log-only notice
        await controller.add_system_message_to_logs(notice)
        if logged.inbox_message_id:
            edited = logged.clone(body=after)
            try:
                await ctx.messenger.edit_message(
                    thread.channel_id,
                    logged.inbox_message_id,
                    format_user_reply_thread_message(edited, ctx.config.relay),
                )
            except DeliveryFailure as e:
                logger.warning("Staff copy of edited message %s not updated: %s", msg.id, e)
        return

    if logged.is_chat():
        await controller.update_chat_message(msg.id, msg.content)


async def handle_message_delete(ctx: ModmailContext, channel_id: str, message_id: str) -> None:
    """Mirror the deletion of a relayed user DM or of logged staff chatter."""
    logged = await ctx.db.find_message_by_dm_message_id(message_id)
    if logged is None:
        return
    thread = await ctx.db.get_thread(logged.thread_id)
    if thread is None or thread.is_closed():
        return

    if logged.is_from_user() and ctx.config.relay.update_messages_live:
        if logged.inbox_message_id:
            try:
                await ctx.messenger.delete_message(thread.channel_id, logged.inbox_message_id)
            except DeliveryFailure as e:
                logger.warning("Staff copy of deleted message %s not removed: %s", message_id, e)
        return

    if logged.is_chat() and channel_id == thread.channel_id:
        await ThreadController(ctx, thread).delete_chat_message(message_id)


async def handle_staff_message(ctx: ModmailContext, msg: IncomingMessage) -> Optional[Thread]:
    """Log a message posted in a thread channel as staff chatter or a command."""
    if msg.author.bot:
        return None

    thread = await ctx.db.find_open_thread_by_channel(msg.channel_id)
    if thread is None:
        thread = await ctx.db.find_suspended_thread_by_channel(msg.channel_id)
    if thread is None:
        return None

    controller = ThreadController(ctx, thread)
    if msg.content.startswith(ctx.config.relay.prefix):
        await controller.save_command_message(msg)
    else:
        await controller.save_chat_message(msg, [a.url for a in msg.attachments])
    return thread
