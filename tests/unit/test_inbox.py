"""Unit tests for platform event routing."""

import asyncio
from dataclasses import replace
from typing import Optional

import pytest

from modmail.core.errors import UserUnreachableError
from modmail.core.hooks import HookName
from modmail.core.inbox import handle_direct_message, handle_message_delete, handle_message_edit, handle_staff_message
from modmail.core.models import Attachment, IncomingMessage, ThreadMessageType, ThreadStatus
from tests.conftest import make_dm, make_moderator, make_user


def _with_relay(ctx, **changes) -> None:
    ctx.config = replace(ctx.config, relay=replace(ctx.config.relay, **changes))


def _staff_message(
    channel_id: str, content: str, message_id: str = "s1", attachments: Optional[list[Attachment]] = None
) -> IncomingMessage:
    return IncomingMessage(
        id=message_id,
        channel_id=channel_id,
        author=make_moderator(),
        content=content,
        attachments=attachments or [],
    )


async def _user_messages(ctx, thread_id: str) -> list[str]:
    messages = await ctx.db.get_thread_messages(thread_id)
    return [m.body for m in messages if m.message_type == ThreadMessageType.FROM_USER]


class TestDirectMessages:
    """Tests for handle_direct_message."""

    @pytest.mark.asyncio
    async def test_first_message_opens_thread_and_relays(self, ctx, messenger):
        thread = await handle_direct_message(ctx, make_dm(make_user(), "my order is missing"))

        assert thread is not None
        posts = messenger.posts_to(thread.channel_id)
        assert posts[0] == "@here"
        assert posts[-1] == "**alice:** my order is missing"
        assert await _user_messages(ctx, thread.id) == ["my order is missing"]

    @pytest.mark.asyncio
    async def test_follow_up_uses_same_thread(self, ctx, messenger):
        user = make_user()
        first = await handle_direct_message(ctx, make_dm(user, "one"))
        second = await handle_direct_message(ctx, make_dm(user, "two"))

        assert first.id == second.id
        assert len(messenger.channels) == 1
        assert await _user_messages(ctx, first.id) == ["one", "two"]

    @pytest.mark.asyncio
    async def test_burst_of_first_messages_opens_one_thread(self, ctx, messenger):
        user = make_user()

        threads = await asyncio.gather(*(handle_direct_message(ctx, make_dm(user, f"m{i}")) for i in range(5)))

        assert len({t.id for t in threads}) == 1
        assert len(messenger.channels) == 1
        assert sorted(await _user_messages(ctx, threads[0].id)) == ["m0", "m1", "m2", "m3", "m4"]

    @pytest.mark.asyncio
    async def test_bots_are_ignored(self, ctx, messenger):
        assert await handle_direct_message(ctx, make_dm(make_user(bot=True))) is None
        messenger.create_channel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_blocked_user_gets_blocked_reply(self, ctx, messenger):
        ctx.config = replace(ctx.config, discord=replace(ctx.config.discord, blocked_reply="You are blocked"))
        await ctx.db.block_user("u1", "alice")

        assert await handle_direct_message(ctx, make_dm(make_user())) is None

        assert messenger.dms == [("u1", "You are blocked")]
        messenger.create_channel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_accidental_opener_is_ignored(self, ctx, messenger):
        _with_relay(ctx, ignore_accidental_threads=True)
        user = make_user()

        assert await handle_direct_message(ctx, make_dm(user, "Thanks")) is None
        messenger.create_channel.assert_not_awaited()

        thread = await handle_direct_message(ctx, make_dm(user, "actually I have a question"))
        await handle_direct_message(ctx, make_dm(user, "thanks"))
        assert await _user_messages(ctx, thread.id) == ["actually I have a question", "thanks"]

    @pytest.mark.asyncio
    async def test_response_message_on_new_thread(self, ctx, messenger):
        _with_relay(ctx, response_message="Thank you for your message!")
        user = make_user()

        thread = await handle_direct_message(ctx, make_dm(user, "hi"))
        await handle_direct_message(ctx, make_dm(user, "hello?"))

        assert messenger.dms == [("u1", "Thank you for your message!")]
        assert "**⚙️ Modmail:** Thank you for your message!" in messenger.posts_to(thread.channel_id)

    @pytest.mark.asyncio
    async def test_undeliverable_response_message_is_noted(self, ctx, messenger):
        _with_relay(ctx, response_message="Thank you for your message!")
        messenger.send_dm.side_effect = UserUnreachableError("send_dm: cannot send messages to this user")

        thread = await handle_direct_message(ctx, make_dm(make_user(), "hi"))

        assert messenger.posts_to(thread.channel_id)[-1] == (
            "**NOTE:** Could not send auto-response to the user. "
            "The error given was: `send_dm: cannot send messages to this user`"
        )

    @pytest.mark.asyncio
    async def test_declined_creation_returns_none(self, ctx, messenger):
        async def refuse(hook_ctx):
            hook_ctx.cancel()

        ctx.hooks.register(HookName.BEFORE_NEW_THREAD, refuse)

        assert await handle_direct_message(ctx, make_dm(make_user())) is None
        assert messenger.posts == []

    @pytest.mark.asyncio
    async def test_suspended_thread_does_not_block_new_thread(self, ctx):
        suspended = await ctx.db.create_thread("u1", "alice", "ch-old")
        await ctx.db.update_thread(suspended.id, status=ThreadStatus.SUSPENDED)

        thread = await handle_direct_message(ctx, make_dm(make_user(), "back again"))

        assert thread.id != suspended.id
        assert await _user_messages(ctx, suspended.id) == []


class TestEdits:
    """Tests for handle_message_edit and handle_message_delete."""

    @pytest.mark.asyncio
    async def test_user_edit_posts_before_and_after(self, ctx, messenger):
        user = make_user()
        thread = await handle_direct_message(ctx, make_dm(user, "see https://a.example", message_id="d1"))

        await handle_message_edit(ctx, make_dm(user, "see https://b.example", message_id="d1"))

        assert messenger.posts_to(thread.channel_id)[-1] == (
            "**The user edited their message:**\n`B:` see <https://a.example>\n`A:` see <https://b.example>"
        )
        messenger.edit_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unchanged_edit_is_ignored(self, ctx, messenger):
        user = make_user()
        thread = await handle_direct_message(ctx, make_dm(user, "same", message_id="d1"))
        posted = len(messenger.posts_to(thread.channel_id))

        await handle_message_edit(ctx, make_dm(user, "same", message_id="d1"))

        assert len(messenger.posts_to(thread.channel_id)) == posted

    @pytest.mark.asyncio
    async def test_live_edit_updates_staff_copy(self, ctx, messenger):
        _with_relay(ctx, update_messages_live=True)
        user = make_user()
        thread = await handle_direct_message(ctx, make_dm(user, "old", message_id="d1"))
        logged = await ctx.db.find_message_by_dm_message_id("d1")
        posted = len(messenger.posts_to(thread.channel_id))

        await handle_message_edit(ctx, make_dm(user, "new", message_id="d1"), old_content="old")

        messenger.edit_message.assert_awaited_once_with(thread.channel_id, logged.inbox_message_id, "**alice:** new")
        assert len(messenger.posts_to(thread.channel_id)) == posted
        bodies = [m.body for m in await ctx.db.get_thread_messages(thread.id)]
        assert "**The user edited their message:**\n`B:` old\n`A:` new" in bodies

    @pytest.mark.asyncio
    async def test_live_delete_removes_staff_copy(self, ctx, messenger):
        _with_relay(ctx, update_messages_live=True)
        thread = await handle_direct_message(ctx, make_dm(make_user(), "oops", message_id="d1"))
        logged = await ctx.db.find_message_by_dm_message_id("d1")

        await handle_message_delete(ctx, "dm-u1", "d1")

        messenger.delete_message.assert_awaited_once_with(thread.channel_id, logged.inbox_message_id)

    @pytest.mark.asyncio
    async def test_unknown_message_is_ignored(self, ctx, messenger):
        await handle_message_edit(ctx, make_dm(make_user(), "new", message_id="nope"))
        await handle_message_delete(ctx, "dm-u1", "nope")

        assert messenger.posts == []


class TestStaffMessages:
    """Tests for handle_staff_message."""

    @pytest.mark.asyncio
    async def test_chat_and_commands_are_logged(self, ctx):
        thread = await ctx.db.create_thread("u1", "alice", "ch-1")
        screenshot = Attachment(id="a1", filename="s.png", url="https://cdn/s.png")

        await handle_staff_message(ctx, _staff_message("ch-1", "looks like spam", "s1", [screenshot]))
        await handle_staff_message(ctx, _staff_message("ch-1", "!close 1h", "s2"))

        messages = await ctx.db.get_thread_messages(thread.id)
        assert [(m.message_type, m.body) for m in messages] == [
            (ThreadMessageType.CHAT, "looks like spam"),
            (ThreadMessageType.COMMAND, "!close 1h"),
        ]
        assert messages[0].get_metadata_value("attachments") == ["https://cdn/s.png"]

    @pytest.mark.asyncio
    async def test_chat_edits_and_deletes_follow(self, ctx):
        thread = await ctx.db.create_thread("u1", "alice", "ch-1")
        await handle_staff_message(ctx, _staff_message("ch-1", "draft", "s1"))

        await handle_message_edit(ctx, _staff_message("ch-1", "final", "s1"))
        assert [m.body for m in await ctx.db.get_thread_messages(thread.id)] == ["final"]

        await handle_message_delete(ctx, "ch-1", "s1")
        assert await ctx.db.get_thread_messages(thread.id) == []

    @pytest.mark.asyncio
    async def test_suspended_thread_still_logs_chatter(self, ctx):
        thread = await ctx.db.create_thread("u1", "alice", "ch-1")
        await ctx.db.update_thread(thread.id, status=ThreadStatus.SUSPENDED)

        assert await handle_staff_message(ctx, _staff_message("ch-1", "noting this")) is not None

    @pytest.mark.asyncio
    async def test_other_channels_are_ignored(self, ctx):
        assert await handle_staff_message(ctx, _staff_message("general", "hello")) is None
