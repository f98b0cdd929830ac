"""Boundary between the relay core and the chat platform."""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from modmail.core.models import GuildMembership, IncomingMessage, JsonDict, OutgoingFile, SentMessage, UserRef


class ChannelMessenger(Protocol):
    """Platform operations the relay needs.

    Implementations raise the DeliveryFailure family from modmail.core.errors:
    ChannelNotFoundError when a channel is gone, ChannelNameRejectedError when
    a channel name is refused, UserUnreachableError when DMs are closed.
    """

    async def create_channel(self, name: str, category_id: Optional[str] = None) -> str:
        """Create a staff channel and return its id."""
        ...

    async def delete_channel(self, channel_id: str, reason: Optional[str] = None) -> None: ...

    async def send(
        self,
        channel_id: str,
        content: str,
        *,
        files: Sequence[OutgoingFile] = (),
        embeds: Sequence[JsonDict] = (),
        reply_to: Optional[str] = None,
        mention_user_ids: Sequence[str] = (),
        mention_roles: Sequence[str] = (),
    ) -> SentMessage:
        """Post to a channel. Mentions not listed are suppressed."""
        ...

    async def send_dm(
        self,
        user_id: str,
        content: str,
        *,
        files: Sequence[OutgoingFile] = (),
        reply_to: Optional[str] = None,
    ) -> SentMessage:
        """DM a user. The returned channel_id is the DM channel."""
        ...

    async def edit_message(self, channel_id: str, message_id: str, content: str) -> None: ...

    async def delete_message(self, channel_id: str, message_id: str) -> None: ...

    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None: ...

    async def fetch_user(self, user_id: str) -> Optional[UserRef]: ...

    async def get_guild_memberships(self, user_id: str) -> list[GuildMembership]:
        """Memberships of the user on the configured main servers."""
        ...

    async def fetch_dm_messages_after(
        self, user_id: str, after_message_id: Optional[str], limit: int = 50
    ) -> list[IncomingMessage]:
        """User DMs newer than after_message_id, oldest first."""
        ...
