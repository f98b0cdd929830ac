"""Unit tests for staff display names and role resolution."""

from dataclasses import replace

import pytest

from modmail.config import config
from modmail.core.display_roles import (
    get_moderator_thread_display_role_name,
    moderator_display_name,
    reset_moderator_thread_role_override,
    set_moderator_thread_role_override,
)
from modmail.core.models import StaffMember


def _moderator(**kwargs) -> StaffMember:
    defaults = {"id": "m1", "username": "mod_one", "global_name": "Mod One", "highest_hoisted_role": "Staff"}
    defaults.update(kwargs)
    return StaffMember(**defaults)


class TestModeratorDisplayName:
    """Tests for moderator_display_name."""

    def test_display_name_with_formatting_broken(self):
        relay = replace(config.relay, use_display_names=False, break_formatting_for_names=True)

        assert moderator_display_name(_moderator(), relay) == "mod\\_one"

    def test_nickname_wins_when_enabled(self):
        relay = replace(config.relay, use_nicknames=True)

        assert moderator_display_name(_moderator(nickname="Boss"), relay) == "Boss"

    def test_global_name_used_by_default(self):
        assert moderator_display_name(_moderator(), config.relay) == "Mod One"


class TestRoleResolution:
    """Tests for the display-role override chain."""

    @pytest.mark.asyncio
    async def test_precedence(self, test_db):
        relay = replace(config.relay, fallback_role_name="Moderator")
        thread = await test_db.create_thread("u1", "alice", "ch-1")
        moderator = _moderator()

        assert await get_moderator_thread_display_role_name(test_db, moderator, thread, relay) == "Staff"

        await test_db.set_moderator_role_override("m1", "r2", "Helper")
        assert await get_moderator_thread_display_role_name(test_db, moderator, thread, relay) == "Helper"

        await set_moderator_thread_role_override(test_db, thread, "m1", "Lead")
        assert await get_moderator_thread_display_role_name(test_db, moderator, thread, relay) == "Lead"
        reloaded = await test_db.get_thread(thread.id)
        assert reloaded.metadata["role_overrides"] == {"m1": "Lead"}

        await reset_moderator_thread_role_override(test_db, thread, "m1")
        await test_db.reset_moderator_role_override("m1")
        no_role = _moderator(highest_hoisted_role=None)
        assert await get_moderator_thread_display_role_name(test_db, no_role, thread, relay) == "Moderator"
