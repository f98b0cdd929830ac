"""Pytest configuration for modmail tests."""

import itertools
import logging
import os
from typing import Optional
from unittest.mock import AsyncMock

import pytest

os.environ.setdefault("MODMAIL_CONFIG_PATH", os.path.join(os.path.dirname(__file__), "config.yml"))

from modmail.config import config as modmail_config  # noqa: E402
from modmail.core.context import build_context  # noqa: E402
from modmail.core.db import Db  # noqa: E402
from modmail.core.models import IncomingMessage, SentMessage, StaffMember, UserRef  # noqa: E402

try:
    import instrukt_ai_logging

    def _noop_configure_logging(*_args, **_kwargs):  # type: ignore[no-untyped-def]
        return None

    instrukt_ai_logging.configure_logging = _noop_configure_logging  # type: ignore[assignment]
    logging.getLogger("modmail").handlers.clear()
    logging.getLogger().handlers.clear()
except ImportError:
    pass


def pytest_collection_modifyitems(config, items):
    """Set per-directory timeouts: unit=1s."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))


class FakeMessenger:
    """In-memory ChannelMessenger recording every call.

    Each method is an AsyncMock so tests can assert on calls or swap in a
    side_effect to simulate platform failures.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1000)
        self.posts: list[tuple[str, str]] = []
        self.dms: list[tuple[str, str]] = []
        self.channels: list[tuple[str, Optional[str], str]] = []
        self.create_channel = AsyncMock(side_effect=self._create_channel)
        self.delete_channel = AsyncMock()
        self.send = AsyncMock(side_effect=self._send)
        self.send_dm = AsyncMock(side_effect=self._send_dm)
        self.edit_message = AsyncMock()
        self.delete_message = AsyncMock()
        self.add_reaction = AsyncMock()
        self.fetch_user = AsyncMock(return_value=None)
        self.get_guild_memberships = AsyncMock(return_value=[])
        self.fetch_dm_messages_after = AsyncMock(return_value=[])

    def _next_id(self) -> str:
        return str(next(self._ids))

    async def _create_channel(self, name: str, category_id: Optional[str] = None) -> str:
        channel_id = f"ch-{self._next_id()}"
        self.channels.append((name, category_id, channel_id))
        return channel_id

    async def _send(self, channel_id: str, content: str, **_kwargs: object) -> SentMessage:
        self.posts.append((channel_id, content))
        return SentMessage(id=self._next_id(), channel_id=channel_id)

    async def _send_dm(self, user_id: str, content: str, **_kwargs: object) -> SentMessage:
        self.dms.append((user_id, content))
        return SentMessage(id=self._next_id(), channel_id=f"dm-{user_id}")

    def posts_to(self, channel_id: str) -> list[str]:
        return [content for target, content in self.posts if target == channel_id]


def make_user(user_id: str = "u1", username: str = "alice", **kwargs: object) -> UserRef:
    return UserRef(id=user_id, username=username, **kwargs)  # type: ignore[arg-type]


def make_moderator(user_id: str = "m1", username: str = "mod", **kwargs: object) -> StaffMember:
    return StaffMember(id=user_id, username=username, **kwargs)  # type: ignore[arg-type]


def make_dm(user: UserRef, content: str = "hello", message_id: Optional[str] = None, **kwargs: object) -> IncomingMessage:
    return IncomingMessage(
        id=message_id or f"dm-msg-{next(_dm_ids)}",
        channel_id=f"dm-{user.id}",
        author=user,
        content=content,
        **kwargs,  # type: ignore[arg-type]
    )


_dm_ids = itertools.count(1)


@pytest.fixture
async def test_db(tmp_path):
    """Create a temporary, initialized database."""
    test_db_instance = Db(str(tmp_path / "modmail.db"))
    await test_db_instance.initialize()

    yield test_db_instance

    await test_db_instance.close()


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
async def ctx(test_db, messenger):
    context = build_context(modmail_config, test_db, messenger)
    yield context
    await context.tasks.shutdown(timeout=0.1)
