"""Thread state machine and the message relay between a user and a staff channel.

A ThreadController wraps one persisted Thread. Status transitions:

    OPEN -> CLOSED       close(), or the scanner once scheduled_close_at elapses
    OPEN -> SUSPENDED    suspend(), or the scanner once scheduled_suspend_at elapses
    SUSPENDED -> OPEN    unsuspend(), refused while another open thread exists
    SUSPENDED -> CLOSED  close()

CLOSED is terminal. Inbound user messages are relayed for OPEN and SUSPENDED
threads; staff replies, edits and deletions require OPEN.
"""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import timedelta
from typing import Optional, Sequence

from instrukt_ai_logging import get_logger

from modmail.config import AttachmentStorageType, RelayConfig
from modmail.constants import MAX_MESSAGE_CONTENT_LENGTH
from modmail.core.chunking import chunk_message_lines, fits_in_one_message
from modmail.core.context import ModmailContext
from modmail.core.dates import parse_delay, utc_now
from modmail.core.display_roles import (
    get_moderator_thread_display_role_name,
    moderator_display_name,
    user_display_name,
)
from modmail.core.errors import (
    ChannelNotFoundError,
    ConflictError,
    DeliveryFailure,
    NotAuthorError,
    NotFoundError,
    ReplyTooLongError,
    UnknownSnippetError,
    ValidationFailure,
)
from modmail.core.formatters import (
    NEW_BODY_KEY,
    ORIGINAL_MESSAGE_KEY,
    format_activity,
    format_forwarded,
    format_staff_reply_deletion_notification,
    format_staff_reply_dm,
    format_staff_reply_edit_notification,
    format_staff_reply_thread_message,
    format_sticker_lines,
    format_system_thread_message,
    format_system_to_user_dm,
    format_system_to_user_thread_message,
    format_user_reply_thread_message,
)
from modmail.core.hooks import (
    AfterNewMessageReceivedContext,
    AfterThreadCloseContext,
    BeforeNewMessageReceivedContext,
    HookName,
    ThreadScheduleContext,
)
from modmail.core.models import (
    Attachment,
    IncomingMessage,
    JsonDict,
    OutgoingFile,
    SentMessage,
    StaffMember,
    Thread,
    ThreadMessage,
    ThreadMessageType,
    ThreadStatus,
    UserRef,
)
from modmail.core.snippets import expand_inline_snippets

logger = get_logger(__name__)

REPLY_TOO_LONG = (
    f"Reply is too long! Make sure your reply is under {MAX_MESSAGE_CONTENT_LENGTH} characters total, "
    "moderator name in the reply included."
)
EDIT_TOO_LONG = (
    f"Edited reply is too long! Make sure the edit is under {MAX_MESSAGE_CONTENT_LENGTH} characters total, "
    "moderator name in the reply included."
)
DEFAULT_AUTO_ALERT_DELAY = timedelta(seconds=1)
DOWNTIME_FETCH_LIMIT = 50

_CLEARED_CLOSE_SCHEDULE: dict[str, object] = {
    "scheduled_close_at": None,
    "scheduled_close_id": None,
    "scheduled_close_name": None,
    "scheduled_close_silent": False,
}
_CLEARED_SUSPEND_SCHEDULE: dict[str, object] = {
    "scheduled_suspend_at": None,
    "scheduled_suspend_id": None,
    "scheduled_suspend_name": None,
}


class ThreadController:  # pylint: disable=too-many-public-methods  # One object per thread owns every thread operation
    """Operations on a single thread."""

    def __init__(self, ctx: ModmailContext, thread: Thread) -> None:
        self.ctx = ctx
        self.thread = thread

    @property
    def id(self) -> str:
        return self.thread.id

    @property
    def relay(self) -> RelayConfig:
        return self.ctx.config.relay

    @property
    def _alert_key(self) -> str:
        return f"auto-alert:{self.thread.id}"

    async def refresh(self) -> Thread:
        """Reload the thread row; other operations may have changed it."""
        fresh = await self.ctx.db.get_thread(self.thread.id)
        if fresh is None:
            raise NotFoundError(f"Thread {self.thread.id} not found")
        self.thread = fresh
        return fresh

    def _apply(self, fields: dict[str, object]) -> None:
        for key, value in fields.items():
            setattr(self.thread, key, value)

    async def _update(self, **fields: object) -> None:
        await self.ctx.db.update_thread(self.thread.id, **fields)
        self._apply(fields)

    # Platform I/O

    async def _post_to_thread_channel(
        self,
        content: str,
        *,
        files: Sequence[OutgoingFile] = (),
        embeds: Sequence[JsonDict] = (),
        reply_to: Optional[str] = None,
        mention_user_ids: Sequence[str] = (),
        mention_roles: Sequence[str] = (),
    ) -> SentMessage:
        """Post to the staff channel, chunking long content.

        Files and embeds ride on the last chunk only.

        Raises:
            ChannelNotFoundError: The channel is gone; the thread has been closed
            DeliveryFailure: Any other send failure
        """
        channel_id = self.thread.channel_id
        try:
            if not content:
                return await self.ctx.messenger.send(
                    channel_id,
                    "",
                    files=files,
                    embeds=embeds,
                    reply_to=reply_to,
                    mention_user_ids=mention_user_ids,
                    mention_roles=mention_roles,
                )

            chunks = chunk_message_lines(content)
            # Mentions ping once, on the first chunk
            for index, chunk in enumerate(chunks[:-1]):
                await self.ctx.messenger.send(
                    channel_id,
                    chunk,
                    mention_user_ids=mention_user_ids if index == 0 else (),
                    mention_roles=mention_roles if index == 0 else (),
                )
            single = len(chunks) == 1
            return await self.ctx.messenger.send(
                channel_id,
                chunks[-1],
                files=files,
                embeds=embeds,
                reply_to=reply_to,
                mention_user_ids=mention_user_ids if single else (),
                mention_roles=mention_roles if single else (),
            )
        except ChannelNotFoundError:
            logger.info(
                "Channel %s of thread #%d (%s) no longer exists, auto-closing the thread",
                channel_id,
                self.thread.thread_number,
                self.thread.user_name,
            )
            await self.close(suppress_system_message=True)
            raise

    async def _notify(self, text: str, *, mention_user_ids: Sequence[str] = ()) -> None:
        """Best-effort system notice; failures are logged, not raised."""
        if self.thread.is_closed():
            return
        try:
            await self.post_system_message(text, mention_user_ids=mention_user_ids)
        except DeliveryFailure as e:
            logger.warning("Could not post notice to thread %s: %s", self.thread.id[:8], e)

    # System and log-only messages

    async def post_system_message(
        self,
        text: str,
        *,
        mention_user_ids: Sequence[str] = (),
        reply_to: Optional[str] = None,
    ) -> tuple[SentMessage, ThreadMessage]:
        """Post a bot notice to the staff channel and log it."""
        message = ThreadMessage(thread_id=self.thread.id, message_type=ThreadMessageType.SYSTEM, body=text)
        sent = await self._post_to_thread_channel(
            format_system_thread_message(message), mention_user_ids=mention_user_ids, reply_to=reply_to
        )
        message.inbox_message_id = sent.id
        await self.ctx.db.add_thread_message(message)
        return sent, message

    async def add_system_message_to_logs(self, text: str) -> ThreadMessage:
        """Log a bot notice without posting it anywhere."""
        message = ThreadMessage(thread_id=self.thread.id, message_type=ThreadMessageType.SYSTEM, body=text)
        return await self.ctx.db.add_thread_message(message)

    async def send_system_message_to_user(
        self,
        text: str,
        *,
        post_to_thread_channel: bool = True,
        mention_user_ids: Sequence[str] = (),
    ) -> ThreadMessage:
        """DM a bot notice to the user, optionally mirroring it to staff, and log it.

        Raises:
            DeliveryFailure: The DM could not be sent; nothing is logged
        """
        message = ThreadMessage(thread_id=self.thread.id, message_type=ThreadMessageType.SYSTEM_TO_USER, body=text)
        sent_dm = await self.ctx.messenger.send_dm(self.thread.user_id, format_system_to_user_dm(message))
        message.dm_message_id = sent_dm.id
        message.dm_channel_id = sent_dm.channel_id

        if post_to_thread_channel:
            try:
                inbox = await self._post_to_thread_channel(
                    format_system_to_user_thread_message(message, self.ctx.bot_name),
                    mention_user_ids=mention_user_ids,
                )
                message.inbox_message_id = inbox.id
            except DeliveryFailure as e:
                logger.warning("System message to user was not mirrored to thread %s: %s", self.thread.id[:8], e)

        return await self.ctx.db.add_thread_message(message)

    async def post_non_log_message(
        self,
        content: str,
        *,
        files: Sequence[OutgoingFile] = (),
        mention_user_ids: Sequence[str] = (),
        mention_roles: Sequence[str] = (),
    ) -> SentMessage:
        """Post to the staff channel without logging it."""
        return await self._post_to_thread_channel(
            content, files=files, mention_user_ids=mention_user_ids, mention_roles=mention_roles
        )

    async def save_chat_message(self, msg: IncomingMessage, attachment_urls: Sequence[str] = ()) -> ThreadMessage:
        """Log internal staff chatter from the thread channel."""
        message = ThreadMessage(
            thread_id=self.thread.id,
            message_type=ThreadMessageType.CHAT,
            user_id=msg.author.id,
            user_name=user_display_name(msg.author, self.relay),
            body=msg.content,
            dm_message_id=msg.id,
            metadata={"attachments": list(attachment_urls)} if attachment_urls else {},
            created_at=msg.created_at,
        )
        return await self.ctx.db.add_thread_message(message)

    async def save_command_message(self, msg: IncomingMessage) -> ThreadMessage:
        message = ThreadMessage(
            thread_id=self.thread.id,
            message_type=ThreadMessageType.COMMAND,
            user_id=msg.author.id,
            user_name=user_display_name(msg.author, self.relay),
            body=msg.content,
            dm_message_id=msg.id,
            created_at=msg.created_at,
        )
        return await self.ctx.db.add_thread_message(message)

    async def update_chat_message(self, message_id: str, content: str) -> bool:
        return await self.ctx.db.update_message_body_by_dm_id(self.thread.id, message_id, content) > 0

    async def delete_chat_message(self, message_id: str) -> bool:
        return await self.ctx.db.delete_message_by_dm_id(self.thread.id, message_id) > 0

    # Inbound relay

    def _normalize_user_content(self, msg: IncomingMessage) -> str:
        content = msg.content or ""
        if msg.forwarded is not None:
            content = format_forwarded(msg.forwarded)

        if msg.activity is not None:
            content = f"{content}\n\n{format_activity(msg.activity)}".strip()

        if msg.stickers:
            content += f"\n\n{format_sticker_lines(msg.stickers)}"

        content = content.strip()
        if msg.forwarded is not None:
            content = f"\n{content}"
        return content

    async def receive_user_reply(self, msg: IncomingMessage, *, skip_alert: bool = False) -> Optional[ThreadMessage]:
        """Relay a user's DM into the staff channel and log it.

        Args:
            msg: The user's message
            skip_alert: Do not ping the alert set (used for all but the first recovered message)

        Returns:
            The logged message (the existing row if this DM was already relayed), or None if a hook
            cancelled the relay
        """
        await self.refresh()

        existing = await self.ctx.db.find_message_by_dm_message_id(msg.id, self.thread.id)
        if existing is not None:
            logger.debug("Message %s already relayed into thread %s", msg.id, self.thread.id[:8])
            return existing

        before = await self.ctx.hooks.run(
            HookName.BEFORE_NEW_MESSAGE_RECEIVED,
            BeforeNewMessageReceivedContext(user=msg.author, message=msg, thread=self.thread),
        )
        if before.cancelled:
            logger.debug("Message %s for thread %s cancelled by hook", msg.id, self.thread.id[:8])
            return None

        inbox_reply_to: Optional[str] = None
        if self.relay.relay_inline_replies and msg.reply_to_id:
            replied_to = await self.ctx.db.find_message_for_message_id(self.thread.id, msg.reply_to_id)
            if replied_to is not None:
                inbox_reply_to = replied_to.inbox_message_id

        embeds = list(msg.embeds)
        attachments = list(msg.attachments)
        if msg.forwarded is not None:
            embeds.extend(msg.forwarded.embeds)
            attachments.extend(msg.forwarded.attachments)

        links: list[str] = []
        small_links: list[str] = []
        files: list[OutgoingFile] = []
        for attachment in attachments:
            saved = await self.ctx.attachments.save(attachment)
            links.append(saved.url)
            if (
                not saved.failed
                and self.relay.relay_small_attachments_as_attachments
                and attachment.size <= self.relay.small_attachment_limit
            ):
                small_links.append(saved.url)
                files.append(OutgoingFile(filename=attachment.filename, url=saved.url))

        message = ThreadMessage(
            thread_id=self.thread.id,
            message_type=ThreadMessageType.FROM_USER,
            user_id=self.thread.user_id,
            user_name=user_display_name(msg.author, self.relay),
            body=self._normalize_user_content(msg),
            attachments=links,
            small_attachments=small_links,
            dm_channel_id=msg.channel_id,
            dm_message_id=msg.id,
            metadata={"embeds": embeds} if embeds else {},
            created_at=msg.created_at,
        )

        relay_error: Optional[DeliveryFailure] = None
        try:
            sent = await self._post_to_thread_channel(
                format_user_reply_thread_message(message, self.relay),
                files=files,
                embeds=embeds,
                reply_to=inbox_reply_to,
            )
            message.inbox_message_id = sent.id
        except ChannelNotFoundError:
            # Thread was auto-closed; the message is still part of its record
            return await self.ctx.db.add_thread_message(message)
        except DeliveryFailure as e:
            logger.warning("Failed to relay message %s to thread %s: %s", msg.id, self.thread.id[:8], e)
            relay_error = e

        if self.relay.react_on_seen and self.relay.react_on_seen_emoji:
            try:
                await self.ctx.messenger.add_reaction(msg.channel_id, msg.id, self.relay.react_on_seen_emoji)
            except DeliveryFailure as e:
                logger.debug("Could not react to message %s: %s", msg.id, e)

        await self.ctx.db.add_thread_message(message)
        logger.debug("Relayed user message %s into thread %s", msg.id, self.thread.id[:8])

        if relay_error is not None:
            await self._notify(f"Failed to relay a message from the user: {relay_error}")

        await self.ctx.hooks.run(
            HookName.AFTER_NEW_MESSAGE_RECEIVED,
            AfterNewMessageReceivedContext(user=msg.author, message=msg, thread=self.thread),
        )

        await self._cancel_schedules_on_activity(from_user=True)

        await self.refresh()
        if self.thread.alert_ids and not skip_alert:
            alert_ids = list(self.thread.alert_ids)
            await self.delete_alerts()
            mentions = "".join(f"<@!{user_id}> " for user_id in alert_ids)
            await self._notify(f"{mentions}New message from {self.thread.user_name}", mention_user_ids=alert_ids)

        return message

    async def _cancel_schedules_on_activity(self, *, from_user: bool) -> None:
        if self.thread.is_closed():
            return

        if self.thread.scheduled_close_at is not None:
            closer_id = self.thread.scheduled_close_id
            await self.cancel_scheduled_close()
            if from_user and closer_id:
                await self._notify(
                    f"<@!{closer_id}> Thread that was scheduled to be closed got a new reply. Cancelling.",
                    mention_user_ids=[closer_id],
                )
            else:
                await self._notify("Cancelling scheduled closing of this thread due to new reply")

        if self.thread.scheduled_suspend_at is not None:
            await self.cancel_scheduled_suspend()
            await self._notify("Cancelling scheduled suspension of this thread due to new reply")

    # Outbound relay

    async def _staff_action_allowed(self) -> bool:
        if self.thread.is_open():
            return True
        if self.thread.is_suspended():
            await self._notify(
                f"This thread is suspended. Use `{self.relay.prefix}unsuspend` before replying, editing or deleting."
            )
        else:
            logger.info("Ignoring staff action on closed thread %s", self.thread.id[:8])
        return False

    def _check_reply_fits(self, message: ThreadMessage, error_text: str) -> None:
        """Both renderings of a reply must fit in one message.

        Raises:
            ReplyTooLongError: Either rendering is over the limit
        """
        if not (
            fits_in_one_message(format_staff_reply_dm(message, self.relay))
            and fits_in_one_message(format_staff_reply_thread_message(message, self.relay))
        ):
            raise ReplyTooLongError(error_text)

    async def _expand_snippets(self, text: str) -> str:
        """Expand inline snippets.

        Raises:
            UnknownSnippetError: A referenced snippet does not exist and unknown references are errors
        """
        snippet_config = self.ctx.config.snippets
        if not snippet_config.allow_inline:
            return text
        expanded, unknown = expand_inline_snippets(
            text, await self.ctx.db.get_all_snippets(), snippet_config.inline_start, snippet_config.inline_end
        )
        if unknown and snippet_config.error_on_unknown_inline:
            raise UnknownSnippetError(unknown)
        return expanded

    async def _save_reply_attachments(self, attachments: Sequence[Attachment]) -> tuple[list[OutgoingFile], list[str]]:
        files: list[OutgoingFile] = []
        links: list[str] = []
        for attachment in attachments:
            saved = await self.ctx.attachments.save(attachment)
            if saved.failed:
                logger.warning("Skipping reply attachment %s: %s", attachment.id, saved.url)
                continue
            files.append(OutgoingFile(filename=attachment.filename, url=saved.url))
            links.append(saved.url)
        return files, links

    async def reply_to_user(
        self,
        moderator: StaffMember,
        text: str,
        attachments: Sequence[Attachment] = (),
        *,
        is_anonymous: bool = False,
        reply_to_message_id: Optional[str] = None,
    ) -> bool:
        """Send a staff reply to the user and mirror it into the staff channel.

        The reply must fit in one message on both sides so it stays editable as
        a unit. Nothing is logged unless the DM was delivered.

        Args:
            moderator: Replying staff member
            text: Reply text (inline snippets are expanded)
            attachments: Files attached by the moderator
            is_anonymous: Hide the moderator's name from the user
            reply_to_message_id: Staff-side id of the message being replied to

        Returns:
            True if the reply reached the user
        """
        await self.refresh()
        if not await self._staff_action_allowed():
            return False

        role_name = await get_moderator_thread_display_role_name(self.ctx.db, moderator, self.thread, self.relay)

        dm_reply_to: Optional[str] = None
        if self.relay.relay_inline_replies and reply_to_message_id:
            replied_to = await self.ctx.db.find_message_for_message_id(self.thread.id, reply_to_message_id)
            if replied_to is not None:
                dm_reply_to = replied_to.dm_message_id

        reply = ThreadMessage(
            thread_id=self.thread.id,
            message_type=ThreadMessageType.TO_USER,
            message_number=self.thread.next_message_number,
            user_id=moderator.id,
            user_name=moderator_display_name(moderator, self.relay),
            role_name=role_name,
            is_anonymous=is_anonymous,
        )
        try:
            reply.body = await self._expand_snippets(text)
            self._check_reply_fits(reply, REPLY_TOO_LONG)

            files, reply.attachments = await self._save_reply_attachments(attachments)

            reply.message_number = await self.ctx.db.allocate_message_number(self.thread.id)
            # A concurrent reply may have pushed the number to one more digit
            self._check_reply_fits(reply, REPLY_TOO_LONG)
        except ValidationFailure as e:
            await self._notify(str(e))
            return False

        try:
            sent_dm = await self.ctx.messenger.send_dm(
                self.thread.user_id, format_staff_reply_dm(reply, self.relay), files=files, reply_to=dm_reply_to
            )
        except DeliveryFailure as e:
            logger.warning("Reply %d to thread %s failed: %s", reply.message_number, self.thread.id[:8], e)
            await self._notify(f"Error while replying to user: {e}")
            return False

        reply.dm_message_id = sent_dm.id
        reply.dm_channel_id = sent_dm.channel_id
        if self.ctx.config.attachments.storage is AttachmentStorageType.ORIGINAL and sent_dm.attachment_urls:
            reply.attachments = list(sent_dm.attachment_urls)

        try:
            inbox = await self._post_to_thread_channel(
                format_staff_reply_thread_message(reply, self.relay), files=files, reply_to=reply_to_message_id
            )
            reply.inbox_message_id = inbox.id
        except DeliveryFailure as e:
            logger.warning(
                "Reply %d reached the user but was not mirrored to thread %s: %s",
                reply.message_number,
                self.thread.id[:8],
                e,
            )

        await self.ctx.db.add_thread_message(reply)
        logger.debug("Staff reply %d sent in thread %s", reply.message_number, self.thread.id[:8])

        await self._cancel_schedules_on_activity(from_user=False)

        if self.relay.auto_alert and self.thread.is_open():
            self.start_auto_alert_timer(moderator.id)

        return True

    async def _find_own_reply(self, moderator: UserRef, message_number: int) -> ThreadMessage:
        target = await self.ctx.db.find_message_by_number(self.thread.id, message_number)
        if target is None or target.message_type != ThreadMessageType.TO_USER:
            raise NotFoundError(f"Reply {message_number} not found in thread #{self.thread.thread_number}")
        if target.user_id != moderator.id:
            raise NotAuthorError(f"Only the original author can change reply {message_number}")
        return target

    async def edit_staff_reply(
        self, moderator: UserRef, message_number: int, new_text: str, *, quiet: bool = True
    ) -> bool:
        """Edit both copies of a staff reply.

        Raises:
            NotFoundError: No reply with that number
            NotAuthorError: The moderator did not write that reply
        """
        await self.refresh()
        if not self.relay.allow_staff_edit:
            logger.debug("Staff edits are disabled")
            return False
        if not await self._staff_action_allowed():
            return False

        target = await self._find_own_reply(moderator, message_number)
        edited = target.clone(body=new_text)
        try:
            self._check_reply_fits(edited, EDIT_TOO_LONG)
        except ReplyTooLongError as e:
            await self._notify(str(e))
            return False
        dm_content = format_staff_reply_dm(edited, self.relay)
        inbox_content = format_staff_reply_thread_message(edited, self.relay)

        if target.dm_channel_id and target.dm_message_id:
            try:
                await self.ctx.messenger.edit_message(target.dm_channel_id, target.dm_message_id, dm_content)
            except DeliveryFailure as e:
                await self._notify(f"Error while editing reply: {e}")
                return False

        if target.inbox_message_id:
            try:
                await self.ctx.messenger.edit_message(self.thread.channel_id, target.inbox_message_id, inbox_content)
            except DeliveryFailure as e:
                logger.warning("Staff copy of reply %d was not edited: %s", message_number, e)

        if not quiet:
            audit = ThreadMessage(
                thread_id=self.thread.id,
                message_type=ThreadMessageType.REPLY_EDITED,
                metadata={ORIGINAL_MESSAGE_KEY: target.to_dict(), NEW_BODY_KEY: new_text},
            )
            notice = format_staff_reply_edit_notification(audit) or ""
            try:
                sent = await self._post_to_thread_channel(notice)
                audit.inbox_message_id = sent.id
            except DeliveryFailure as e:
                logger.warning("Edit notice for reply %d was not posted: %s", message_number, e)
            await self.ctx.db.add_thread_message(audit)

        await self.ctx.db.update_thread_message(target.id or 0, body=new_text)
        return True

    async def delete_staff_reply(self, moderator: UserRef, message_number: int, *, quiet: bool = False) -> bool:
        """Delete both copies of a staff reply and its log row.

        Raises:
            NotFoundError: No reply with that number
            NotAuthorError: The moderator did not write that reply
        """
        await self.refresh()
        if not self.relay.allow_staff_delete:
            logger.debug("Staff deletions are disabled")
            return False
        if not await self._staff_action_allowed():
            return False

        target = await self._find_own_reply(moderator, message_number)

        if target.dm_channel_id and target.dm_message_id:
            try:
                await self.ctx.messenger.delete_message(target.dm_channel_id, target.dm_message_id)
            except DeliveryFailure as e:
                await self._notify(f"Error while deleting reply: {e}")
                return False

        if target.inbox_message_id:
            try:
                await self.ctx.messenger.delete_message(self.thread.channel_id, target.inbox_message_id)
            except DeliveryFailure as e:
                logger.warning("Staff copy of reply %d was not deleted: %s", message_number, e)

        if not quiet:
            audit = ThreadMessage(
                thread_id=self.thread.id,
                message_type=ThreadMessageType.REPLY_DELETED,
                metadata={ORIGINAL_MESSAGE_KEY: target.to_dict()},
            )
            notice = format_staff_reply_deletion_notification(audit) or ""
            try:
                sent = await self._post_to_thread_channel(notice)
                audit.inbox_message_id = sent.id
            except DeliveryFailure as e:
                logger.warning("Delete notice for reply %d was not posted: %s", message_number, e)
            await self.ctx.db.add_thread_message(audit)

        await self.ctx.db.delete_thread_message(target.id or 0)
        return True

    # State transitions

    async def close(self, *, suppress_system_message: bool = False, silent: bool = False) -> None:
        """Close the thread and delete its staff channel. Closing twice is a no-op."""
        if self.thread.is_closed():
            return

        if not suppress_system_message:
            await self._notify("Closing thread silently..." if silent else "Closing thread...")
            if self.thread.is_closed():
                # The notice found the channel gone and closed the thread already
                return

        await self._update(status=ThreadStatus.CLOSED, **_CLEARED_CLOSE_SCHEDULE, **_CLEARED_SUSPEND_SCHEDULE)
        self.ctx.tasks.cancel(self._alert_key)

        try:
            await self.ctx.messenger.delete_channel(self.thread.channel_id, reason="Thread closed")
        except ChannelNotFoundError:
            logger.debug("Channel %s was already deleted", self.thread.channel_id)

        logger.info("Closed thread #%d (%s) with %s", self.thread.thread_number, self.thread.id[:8], self.thread.user_name)
        await self.ctx.hooks.run(HookName.AFTER_THREAD_CLOSE, AfterThreadCloseContext(thread_id=self.thread.id))

    async def schedule_close(self, delay: timedelta, actor: UserRef, *, silent: bool = False) -> None:
        await self._update(
            scheduled_close_at=utc_now() + delay,
            scheduled_close_id=actor.id,
            scheduled_close_name=user_display_name(actor, self.relay),
            scheduled_close_silent=silent,
        )
        logger.info("Thread %s scheduled to close in %s", self.thread.id[:8], delay)
        await self.ctx.hooks.run(HookName.AFTER_THREAD_CLOSE_SCHEDULED, ThreadScheduleContext(thread=self.thread))

    async def cancel_scheduled_close(self) -> None:
        await self._update(**_CLEARED_CLOSE_SCHEDULE)
        await self.ctx.hooks.run(
            HookName.AFTER_THREAD_CLOSE_SCHEDULE_CANCELED, ThreadScheduleContext(thread=self.thread)
        )

    async def suspend(self) -> None:
        await self._update(status=ThreadStatus.SUSPENDED, **_CLEARED_SUSPEND_SCHEDULE)
        self.ctx.tasks.cancel(self._alert_key)
        logger.info("Suspended thread #%d (%s)", self.thread.thread_number, self.thread.id[:8])

    async def schedule_suspend(self, delay: timedelta, actor: UserRef) -> None:
        await self._update(
            scheduled_suspend_at=utc_now() + delay,
            scheduled_suspend_id=actor.id,
            scheduled_suspend_name=user_display_name(actor, self.relay),
        )
        logger.info("Thread %s scheduled to suspend in %s", self.thread.id[:8], delay)

    async def cancel_scheduled_suspend(self) -> None:
        await self._update(**_CLEARED_SUSPEND_SCHEDULE)

    async def unsuspend(self) -> None:
        """Reopen a suspended thread.

        Raises:
            ConflictError: The user has another open thread
        """
        await self.refresh()
        if not self.thread.is_suspended():
            return

        other = await self.ctx.db.find_open_thread_by_user(self.thread.user_id)
        if other is not None and other.id != self.thread.id:
            raise ConflictError(
                f"Cannot unsuspend; there is another open thread with this user: <#{other.channel_id}>"
            )

        try:
            await self._update(status=ThreadStatus.OPEN)
        except sqlite3.IntegrityError as e:
            # Lost a race against a new thread for the same user
            self.thread.status = ThreadStatus.SUSPENDED
            raise ConflictError("Cannot unsuspend; there is another open thread with this user") from e
        logger.info("Unsuspended thread #%d (%s)", self.thread.thread_number, self.thread.id[:8])

    # Alerts

    async def add_alert(self, user_id: str) -> None:
        await self.ctx.db.add_alert(self.thread.id, user_id)
        if user_id not in self.thread.alert_ids:
            self.thread.alert_ids.append(user_id)

    async def remove_alert(self, user_id: str) -> None:
        await self.ctx.db.remove_alert(self.thread.id, user_id)
        self.thread.alert_ids = [a for a in self.thread.alert_ids if a != user_id]

    async def delete_alerts(self) -> None:
        await self.ctx.db.clear_alerts(self.thread.id)
        self.thread.alert_ids = []

    def start_auto_alert_timer(self, moderator_id: str) -> None:
        """(Re)start the timer that adds the moderator to the alert set."""
        delay = parse_delay(self.relay.auto_alert_delay) or DEFAULT_AUTO_ALERT_DELAY
        self.ctx.tasks.spawn(
            self._auto_alert_after(delay.total_seconds(), moderator_id),
            name=f"auto-alert-{self.thread.id[:8]}",
            key=self._alert_key,
        )

    async def _auto_alert_after(self, delay_s: float, moderator_id: str) -> None:
        await asyncio.sleep(delay_s)
        thread = await self.ctx.db.get_thread(self.thread.id)
        if thread is None or not thread.is_open():
            return
        await self.ctx.db.add_alert(thread.id, moderator_id)
        logger.debug("Auto-alert set for %s on thread %s", moderator_id, thread.id[:8])

    # Maintenance and queries

    async def recover_downtime_messages(self) -> int:
        """Relay user DMs that arrived while the relay was offline.

        Returns:
            Number of recovered messages
        """
        if await self.ctx.db.is_blocked(self.thread.user_id):
            return 0

        latest = await self.ctx.db.get_latest_relayed_message(self.thread.id)
        after_id = latest.dm_message_id if latest else None
        fetched = await self.ctx.messenger.fetch_dm_messages_after(
            self.thread.user_id, after_id, limit=DOWNTIME_FETCH_LIMIT
        )
        messages = [m for m in fetched if m.author.id == self.thread.user_id]
        if not messages:
            return 0

        await self._notify(f"📥 Recovering {len(messages)} message(s) sent by user during bot downtime!")
        for index, msg in enumerate(messages):
            await self.receive_user_reply(msg, skip_alert=index > 0)

        logger.info("Recovered %d downtime messages for thread %s", len(messages), self.thread.id[:8])
        return len(messages)

    async def reset_thread_id(self) -> str:
        """Re-key this thread and all of its messages."""
        self.thread.id = await self.ctx.db.reset_thread_id(self.thread.id)
        return self.thread.id

    async def get_thread_messages(self) -> list[ThreadMessage]:
        return await self.ctx.db.get_thread_messages(self.thread.id)

    async def find_message_by_number(self, message_number: int) -> Optional[ThreadMessage]:
        return await self.ctx.db.find_message_by_number(self.thread.id, message_number)
