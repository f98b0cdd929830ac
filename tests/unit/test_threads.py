"""Unit tests for thread creation."""

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from modmail.core.dates import utc_now
from modmail.core.errors import AlreadyOpenError, ChannelNameRejectedError, PolicyDecline
from modmail.core.hooks import BeforeNewThreadContext, HookName
from modmail.core.models import GuildMembership, Thread, ThreadStatus
from modmail.core.threads import (
    CreateThreadOptions,
    create_new_thread_for_user,
    format_username,
    mention_roles_to_mention,
)
from tests.conftest import make_user


def _with_requirements(ctx, **changes) -> None:
    ctx.config = replace(ctx.config, requirements=replace(ctx.config.requirements, **changes))


class TestChannelNames:
    """Tests for format_username and mention rendering."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Alice", "alice"),
            ("john.doe", "john․doe"),
            ("Ünïcode Name!", "unicode_name"),
            ("!!!", "unknown"),
        ],
    )
    def test_format_username(self, name, expected):
        assert format_username(name) == expected

    def test_mention_roles(self):
        assert mention_roles_to_mention(["here", "everyone", "123"]) == "@here @everyone <@&123>"
        assert mention_roles_to_mention([]) == ""


class TestCreateThread:
    """Tests for create_new_thread_for_user."""

    @pytest.mark.asyncio
    async def test_creates_channel_and_header(self, ctx, messenger):
        thread = await create_new_thread_for_user(ctx, make_user())

        assert isinstance(thread, Thread)
        assert thread.thread_number == 1
        assert thread.status == ThreadStatus.OPEN
        assert messenger.channels == [("alice", "300", thread.channel_id)]
        mention, header = messenger.posts_to(thread.channel_id)
        assert mention == "@here"
        assert header.startswith("ID **u1**")
        assert header.endswith("────────────────")
        # The mention is not part of the transcript
        assert [m.body for m in await ctx.db.get_thread_messages(thread.id)] == [header]

    @pytest.mark.asyncio
    async def test_quiet_skips_mention(self, ctx, messenger):
        thread = await create_new_thread_for_user(ctx, make_user(), CreateThreadOptions(quiet=True))

        assert len(messenger.posts_to(thread.channel_id)) == 1

    @pytest.mark.asyncio
    async def test_category_follows_main_server_membership(self, ctx, messenger):
        joined = utc_now() - timedelta(days=30)
        messenger.get_guild_memberships.return_value = [
            GuildMembership(guild_id="101", guild_name="Gamers", joined_at=joined, role_names=["Member"])
        ]

        thread = await create_new_thread_for_user(ctx, make_user())

        assert messenger.channels[0][1] == "301"
        header = messenger.posts_to(thread.channel_id)[-1]
        assert "**[Gamers]** JOINED **30 days** ago, ROLES **Member**" in header

    @pytest.mark.asyncio
    async def test_header_counts_history(self, ctx, messenger):
        old = await ctx.db.create_thread("u1", "alice", "ch-old")
        await ctx.db.update_thread(old.id, status=ThreadStatus.CLOSED)
        await ctx.db.add_note("u1", "m1", "regular")

        thread = await create_new_thread_for_user(ctx, make_user())

        assert thread.thread_number == 2
        header = messenger.posts_to(thread.channel_id)[-1]
        assert "This user has **1** previous modmail thread. Use `!logs` to see them." in header
        assert "This user has **1** note. Use `!notes` to see them." in header

    @pytest.mark.asyncio
    async def test_existing_open_thread_raises(self, ctx, messenger):
        await ctx.db.create_thread("u1", "alice", "ch-1")

        with pytest.raises(AlreadyOpenError):
            await create_new_thread_for_user(ctx, make_user())

        messenger.create_channel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_channel_name_is_retried(self, ctx, messenger):
        messenger.create_channel.side_effect = [ChannelNameRejectedError("create_channel: rejected"), "ch-9"]

        thread = await create_new_thread_for_user(ctx, make_user(username="badword"))

        assert thread.channel_id == "ch-9"
        names = [call.args[0] for call in messenger.create_channel.await_args_list]
        assert names == ["badword", "badname"]


class TestEligibility:
    """Tests for account-age and time-on-server gates."""

    @pytest.mark.asyncio
    async def test_young_account_is_declined_with_message(self, ctx, messenger):
        _with_requirements(ctx, account_age_hours=24, account_age_denied_message="Your account is too new")
        user = make_user(created_at=utc_now() - timedelta(hours=1))

        result = await create_new_thread_for_user(ctx, user)

        assert result == PolicyDecline(reason="account_age", message="Your account is too new")
        assert messenger.dms == [("u1", "Your account is too new")]
        messenger.create_channel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recent_member_is_declined_silently(self, ctx, messenger):
        _with_requirements(ctx, time_on_server_minutes=60)
        messenger.get_guild_memberships.return_value = [
            GuildMembership(guild_id="100", guild_name="Main", joined_at=utc_now() - timedelta(minutes=5))
        ]

        result = await create_new_thread_for_user(ctx, make_user())

        assert isinstance(result, PolicyDecline)
        assert result.reason == "time_on_server"
        assert messenger.dms == []

    @pytest.mark.asyncio
    async def test_requirements_can_be_ignored(self, ctx):
        _with_requirements(ctx, account_age_hours=24)
        user = make_user(created_at=utc_now() - timedelta(hours=1))

        result = await create_new_thread_for_user(ctx, user, CreateThreadOptions(ignore_requirements=True))

        assert isinstance(result, Thread)

    @pytest.mark.asyncio
    async def test_old_enough_account_passes(self, ctx, messenger):
        _with_requirements(ctx, account_age_hours=24)
        user = make_user(created_at=utc_now() - timedelta(days=400))

        thread = await create_new_thread_for_user(ctx, user)

        assert isinstance(thread, Thread)
        assert messenger.posts_to(thread.channel_id)[-1].startswith("ACCOUNT AGE **1 year, 35 days**")


class TestCreationHooks:
    """Tests for beforeNewThread hooks."""

    @pytest.mark.asyncio
    async def test_hook_can_cancel(self, ctx, messenger):
        async def refuse(hook_ctx: BeforeNewThreadContext) -> None:
            hook_ctx.cancel()

        ctx.hooks.register(HookName.BEFORE_NEW_THREAD, refuse)

        result = await create_new_thread_for_user(ctx, make_user())

        assert result == PolicyDecline(reason="hook")
        messenger.create_channel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hook_overrides_category_and_name(self, ctx, messenger):
        async def route(hook_ctx: BeforeNewThreadContext) -> None:
            hook_ctx.set_category_id("777")
            hook_ctx.set_channel_name("vip-alice")

        ctx.hooks.register(HookName.BEFORE_NEW_THREAD, route)

        await create_new_thread_for_user(ctx, make_user())

        assert messenger.channels[0][:2] == ("vip-alice", "777")

    @pytest.mark.asyncio
    async def test_hooks_can_be_skipped(self, ctx):
        async def refuse(hook_ctx: BeforeNewThreadContext) -> None:
            hook_ctx.cancel()

        ctx.hooks.register(HookName.BEFORE_NEW_THREAD, refuse)

        result = await create_new_thread_for_user(ctx, make_user(), CreateThreadOptions(ignore_hooks=True))

        assert isinstance(result, Thread)


class TestConcurrentCreation:
    """Tests for serialized creation."""

    @pytest.mark.asyncio
    async def test_same_user_gets_exactly_one_thread(self, ctx, messenger):
        results = await asyncio.gather(
            *(create_new_thread_for_user(ctx, make_user()) for _ in range(5)), return_exceptions=True
        )

        threads = [r for r in results if isinstance(r, Thread)]
        conflicts = [r for r in results if isinstance(r, AlreadyOpenError)]
        assert len(threads) == 1
        assert len(conflicts) == 4
        assert len(messenger.channels) == 1

    @pytest.mark.asyncio
    async def test_distinct_users_get_contiguous_numbers(self, ctx):
        users = [make_user(f"u{i}", f"user{i}") for i in range(5)]

        threads = await asyncio.gather(*(create_new_thread_for_user(ctx, u) for u in users))

        assert sorted(t.thread_number for t in threads) == [1, 2, 3, 4, 5]
