"""discord.py implementation of the relay's ChannelMessenger boundary."""

from __future__ import annotations

import asyncio
import contextlib
import importlib
import io
from datetime import datetime
from types import ModuleType
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable, Optional, Protocol, Sequence, cast

import httpx
from instrukt_ai_logging import get_logger

from modmail.constants import (
    DISCORD_CANNOT_MESSAGE_USER,
    DISCORD_UNKNOWN_CHANNEL,
    DISCORD_UNKNOWN_MEMBER,
    DISCOVERY_NAME_REJECTED,
)
from modmail.core import inbox
from modmail.core.errors import (
    ChannelNameRejectedError,
    ChannelNotFoundError,
    DeliveryFailure,
    UserUnreachableError,
)
from modmail.core.models import (
    Attachment,
    ForwardedMessage,
    GuildMembership,
    IncomingMessage,
    JsonDict,
    MessageActivity,
    OutgoingFile,
    SentMessage,
    StaffMember,
    Sticker,
    UserRef,
)

if TYPE_CHECKING:
    from modmail.core.context import ModmailContext
    from modmail.core.task_registry import TaskRegistry

logger = get_logger(__name__)

# discord.py MessageActivityType values
_ACTIVITY_KINDS = {1: "join", 2: "spectate", 3: "listen", 5: "join_request"}


class DiscordClientLike(Protocol):
    """Minimal discord.py client surface used by the messenger."""

    user: object | None

    def event(self, coro: Callable[..., Awaitable[None]]) -> object: ...

    async def start(self, token: str) -> None: ...

    async def close(self) -> None: ...


def _id(value: object) -> Optional[str]:
    return str(value) if value is not None else None


def _to_user_ref(user: object) -> UserRef:
    return UserRef(
        id=str(getattr(user, "id")),
        username=str(getattr(user, "name", "") or ""),
        global_name=getattr(user, "global_name", None),
        created_at=getattr(user, "created_at", None),
        bot=bool(getattr(user, "bot", False)),
    )


def to_staff_member(member: object) -> StaffMember:
    """Build a StaffMember from a discord.Member."""
    hoisted = [r for r in getattr(member, "roles", []) if getattr(r, "hoist", False)]
    top_hoisted = max(hoisted, key=lambda r: getattr(r, "position", 0)) if hoisted else None
    user = _to_user_ref(member)
    return StaffMember(
        id=user.id,
        username=user.username,
        global_name=user.global_name,
        created_at=user.created_at,
        bot=user.bot,
        nickname=getattr(member, "nick", None),
        highest_hoisted_role=getattr(top_hoisted, "name", None),
    )


def _to_attachments(raw: Sequence[object]) -> list[Attachment]:
    return [
        Attachment(
            id=str(getattr(a, "id")),
            filename=str(getattr(a, "filename", "file")),
            url=str(getattr(a, "url", "")),
            size=int(getattr(a, "size", 0) or 0),
            content_type=getattr(a, "content_type", None),
        )
        for a in raw
    ]


def _to_stickers(raw: Sequence[object]) -> list[Sticker]:
    return [Sticker(id=str(getattr(s, "id")), name=str(getattr(s, "name", ""))) for s in raw]


def _to_embeds(raw: Sequence[object]) -> list[JsonDict]:
    embeds: list[JsonDict] = []
    for embed in raw:
        to_dict = getattr(embed, "to_dict", None)
        if callable(to_dict):
            embeds.append(cast(JsonDict, to_dict()))
    return embeds


class DiscordMessenger:
    """ChannelMessenger over a discord.py client, plus the gateway event wiring."""

    def __init__(
        self,
        token: str,
        *,
        inbox_server_id: Optional[str],
        main_server_ids: Sequence[str],
        task_registry: "TaskRegistry | None" = None,
    ) -> None:
        self._discord: ModuleType = importlib.import_module("discord")
        self._token = token.strip()
        self._inbox_server_id = inbox_server_id
        self._main_server_ids = list(main_server_ids)
        self.task_registry = task_registry
        self._client: DiscordClientLike | None = None
        self._gateway_task: asyncio.Task[object] | None = None
        self._ready_event = asyncio.Event()
        self._ctx: "ModmailContext | None" = None

    def bind(self, ctx: "ModmailContext") -> None:
        """Route gateway events into the relay once its context exists."""
        self._ctx = ctx

    async def start(self) -> None:
        """Initialize the Discord client and start the gateway task."""
        if not self._token:
            raise ValueError("DISCORD_BOT_TOKEN is required to start the Discord messenger")

        intents = self._discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.messages = True
        intents.dm_messages = True
        intents.message_content = True

        self._client = self._discord.Client(intents=intents)
        self._register_gateway_handlers()
        self._ready_event.clear()

        if self.task_registry:
            self._gateway_task = self.task_registry.spawn(self._client.start(self._token), name="discord-gateway")
        else:
            self._gateway_task = asyncio.create_task(self._client.start(self._token), name="discord-gateway")

        try:
            await asyncio.wait_for(self._ready_event.wait(), timeout=20.0)
        except asyncio.TimeoutError as exc:
            if self._gateway_task and self._gateway_task.done():
                task_exc = self._gateway_task.exception()
                if task_exc:
                    raise RuntimeError(f"Discord gateway failed to start: {task_exc}") from task_exc
            raise RuntimeError("Discord messenger did not become ready within 20 seconds") from exc

    async def stop(self) -> None:
        """Stop the Discord client and gateway task."""
        if self._client is not None:
            await self._client.close()
        if self._gateway_task and not self._gateway_task.done():
            self._gateway_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._gateway_task

    # Error translation

    def _translate(self, exc: Exception, action: str) -> DeliveryFailure:
        code = getattr(exc, "code", None)
        text = str(exc)
        if code == DISCORD_UNKNOWN_CHANNEL:
            return ChannelNotFoundError(f"{action}: unknown channel")
        if DISCOVERY_NAME_REJECTED in text:
            return ChannelNameRejectedError(f"{action}: {text}")
        if code == DISCORD_CANNOT_MESSAGE_USER:
            return UserUnreachableError(f"{action}: cannot send messages to this user")
        return DeliveryFailure(f"{action}: {text}")

    @contextlib.asynccontextmanager
    async def _platform_call(self, action: str) -> AsyncIterator[None]:
        try:
            yield
        except self._discord.DiscordException as exc:
            logger.debug("Discord %s failed: %s", action, exc)
            raise self._translate(exc, action) from exc

    @staticmethod
    def _require_async_callable(fn: object, *, label: str) -> Callable[..., Awaitable[object]]:
        if not callable(fn):
            raise DeliveryFailure(f"{label} is not callable")
        return cast(Callable[..., Awaitable[object]], fn)

    # Lookups

    def _require_client(self) -> DiscordClientLike:
        if self._client is None:
            raise DeliveryFailure("Discord client not initialized")
        return self._client

    def _get_guild(self, guild_id: Optional[str]) -> object | None:
        if not guild_id or self._client is None:
            return None
        get_fn = getattr(self._client, "get_guild", None)
        return get_fn(int(guild_id)) if callable(get_fn) else None

    async def _get_channel(self, channel_id: str) -> object:
        client = self._require_client()
        get_fn = getattr(client, "get_channel", None)
        if callable(get_fn):
            cached = get_fn(int(channel_id))
            if cached is not None:
                return cached

        fetch_fn = self._require_async_callable(getattr(client, "fetch_channel", None), label="fetch_channel")
        async with self._platform_call(f"fetch channel {channel_id}"):
            return await fetch_fn(int(channel_id))

    async def _get_user(self, user_id: str) -> object:
        client = self._require_client()
        get_fn = getattr(client, "get_user", None)
        if callable(get_fn):
            cached = get_fn(int(user_id))
            if cached is not None:
                return cached
        fetch_fn = self._require_async_callable(getattr(client, "fetch_user", None), label="fetch_user")
        async with self._platform_call(f"fetch user {user_id}"):
            return await fetch_fn(int(user_id))

    async def _fetch_message(self, channel_id: str, message_id: str) -> object:
        channel = await self._get_channel(channel_id)
        fetch_fn = self._require_async_callable(getattr(channel, "fetch_message", None), label="fetch_message")
        async with self._platform_call(f"fetch message {message_id}"):
            return await fetch_fn(int(message_id))

    # Payload builders

    async def _to_discord_files(self, files: Sequence[OutgoingFile]) -> list[object]:
        built: list[object] = []
        if not files:
            return built
        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as http:
            for outgoing in files:
                data = outgoing.data
                if data is None and outgoing.url:
                    try:
                        response = await http.get(outgoing.url)
                        response.raise_for_status()
                    except httpx.HTTPError as exc:
                        raise DeliveryFailure(f"Could not fetch {outgoing.filename}: {exc}") from exc
                    data = response.content
                if data is None:
                    continue
                built.append(self._discord.File(io.BytesIO(data), filename=outgoing.filename))
        return built

    def _allowed_mentions(self, user_ids: Sequence[str], roles: Sequence[str]) -> object:
        everyone = any(role in ("here", "everyone") for role in roles)
        role_objects = [self._discord.Object(id=int(r)) for r in roles if r not in ("here", "everyone")]
        return self._discord.AllowedMentions(
            everyone=everyone,
            users=[self._discord.Object(id=int(u)) for u in user_ids],
            roles=role_objects,
            replied_user=False,
        )

    def _reference(self, message_id: Optional[str], channel_id: Optional[str] = None) -> object | None:
        if not message_id:
            return None
        return self._discord.MessageReference(
            message_id=int(message_id),
            channel_id=int(channel_id) if channel_id else None,
            fail_if_not_exists=False,
        )

    @staticmethod
    def _sent(message: object) -> SentMessage:
        channel = getattr(message, "channel", None)
        return SentMessage(
            id=str(getattr(message, "id")),
            channel_id=str(getattr(channel, "id", "")),
            attachment_urls=[str(getattr(a, "url", "")) for a in getattr(message, "attachments", [])],
        )

    # ChannelMessenger

    async def create_channel(self, name: str, category_id: Optional[str] = None) -> str:
        guild = self._get_guild(self._inbox_server_id)
        if guild is None:
            raise DeliveryFailure("Inbox server is not available")

        category = None
        if category_id:
            get_channel = getattr(guild, "get_channel", None)
            category = get_channel(int(category_id)) if callable(get_channel) else None

        create_fn = self._require_async_callable(
            getattr(guild, "create_text_channel", None), label="guild.create_text_channel"
        )
        async with self._platform_call(f"create channel {name}"):
            channel = await create_fn(name=name, category=category, reason="New Modmail thread")
        channel_id = str(getattr(channel, "id"))
        logger.debug("Created Discord channel %s (id=%s)", name, channel_id)
        return channel_id

    async def delete_channel(self, channel_id: str, reason: Optional[str] = None) -> None:
        channel = await self._get_channel(channel_id)
        delete_fn = self._require_async_callable(getattr(channel, "delete", None), label="channel delete")
        async with self._platform_call(f"delete channel {channel_id}"):
            await delete_fn(reason=reason)

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
        channel = await self._get_channel(channel_id)
        send_fn = self._require_async_callable(getattr(channel, "send", None), label="channel send")
        discord_files = await self._to_discord_files(files)
        async with self._platform_call(f"send to {channel_id}"):
            sent = await send_fn(
                content=content or None,
                files=discord_files or None,
                embeds=[self._discord.Embed.from_dict(e) for e in embeds] or None,
                reference=self._reference(reply_to, channel_id),
                allowed_mentions=self._allowed_mentions(mention_user_ids, mention_roles),
            )
        return self._sent(sent)

    async def send_dm(
        self,
        user_id: str,
        content: str,
        *,
        files: Sequence[OutgoingFile] = (),
        reply_to: Optional[str] = None,
    ) -> SentMessage:
        user = await self._get_user(user_id)
        send_fn = self._require_async_callable(getattr(user, "send", None), label="user send")
        discord_files = await self._to_discord_files(files)
        async with self._platform_call(f"DM {user_id}"):
            sent = await send_fn(
                content=content or None,
                files=discord_files or None,
                reference=self._reference(reply_to),
                allowed_mentions=self._allowed_mentions((), ()),
            )
        return self._sent(sent)

    async def edit_message(self, channel_id: str, message_id: str, content: str) -> None:
        message = await self._fetch_message(channel_id, message_id)
        edit_fn = self._require_async_callable(getattr(message, "edit", None), label="message edit")
        async with self._platform_call(f"edit message {message_id}"):
            await edit_fn(content=content)

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        message = await self._fetch_message(channel_id, message_id)
        delete_fn = self._require_async_callable(getattr(message, "delete", None), label="message delete")
        async with self._platform_call(f"delete message {message_id}"):
            await delete_fn()

    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        message = await self._fetch_message(channel_id, message_id)
        react_fn = self._require_async_callable(getattr(message, "add_reaction", None), label="add_reaction")
        async with self._platform_call(f"react to {message_id}"):
            await react_fn(emoji)

    async def fetch_user(self, user_id: str) -> Optional[UserRef]:
        try:
            return _to_user_ref(await self._get_user(user_id))
        except DeliveryFailure as exc:
            logger.debug("User %s not found: %s", user_id, exc)
            return None

    async def get_guild_memberships(self, user_id: str) -> list[GuildMembership]:
        memberships: list[GuildMembership] = []
        for guild_id in self._main_server_ids:
            guild = self._get_guild(guild_id)
            if guild is None:
                continue
            fetch_fn = self._require_async_callable(getattr(guild, "fetch_member", None), label="fetch_member")
            try:
                member = await fetch_fn(int(user_id))
            except self._discord.DiscordException as exc:
                # Not being a member of a main server is normal
                if getattr(exc, "code", None) != DISCORD_UNKNOWN_MEMBER:
                    logger.warning("Fetching member %s on %s failed: %s", user_id, guild_id, exc)
                continue

            memberships.append(
                GuildMembership(
                    guild_id=str(guild_id),
                    guild_name=str(getattr(guild, "name", guild_id)),
                    joined_at=getattr(member, "joined_at", None),
                    nickname=getattr(member, "nick", None),
                    role_names=[
                        str(getattr(r, "name", ""))
                        for r in getattr(member, "roles", [])
                        if not getattr(r, "is_default", lambda: False)()
                    ],
                )
            )
        return memberships

    async def fetch_dm_messages_after(
        self, user_id: str, after_message_id: Optional[str], limit: int = 50
    ) -> list[IncomingMessage]:
        user = await self._get_user(user_id)
        channel = getattr(user, "dm_channel", None)
        if channel is None:
            create_dm = self._require_async_callable(getattr(user, "create_dm", None), label="create_dm")
            async with self._platform_call(f"open DM with {user_id}"):
                channel = await create_dm()

        after = self._discord.Object(id=int(after_message_id)) if after_message_id else None
        history = getattr(channel, "history")
        messages: list[IncomingMessage] = []
        async with self._platform_call(f"read DM history of {user_id}"):
            async for message in history(limit=limit, after=after, oldest_first=True):
                messages.append(self.to_incoming_message(message))
        return messages

    # Inbound conversion

    def to_incoming_message(self, message: object) -> IncomingMessage:
        """Snapshot a discord.Message as an IncomingMessage."""
        reference = getattr(message, "reference", None)
        snapshots = list(getattr(message, "message_snapshots", None) or [])

        forwarded: Optional[ForwardedMessage] = None
        reply_to_id: Optional[str] = None
        if snapshots:
            snapshot = snapshots[0]
            guild = self._get_guild(_id(getattr(reference, "guild_id", None)))
            forwarded = ForwardedMessage(
                content=str(getattr(snapshot, "content", "") or ""),
                guild_name=getattr(guild, "name", None),
                url=getattr(reference, "jump_url", None),
                created_at=cast(Optional[datetime], getattr(snapshot, "created_at", None)),
                attachments=_to_attachments(getattr(snapshot, "attachments", [])),
                stickers=_to_stickers(getattr(snapshot, "stickers", [])),
                embeds=_to_embeds(getattr(snapshot, "embeds", [])),
            )
        elif reference is not None:
            reply_to_id = _id(getattr(reference, "message_id", None))

        activity: Optional[MessageActivity] = None
        raw_activity = getattr(message, "activity", None)
        if isinstance(raw_activity, dict):
            application = getattr(message, "application", None)
            activity = MessageActivity(
                kind=_ACTIVITY_KINDS.get(int(raw_activity.get("type", 0)), "other"),
                party_id=raw_activity.get("party_id"),
                application_name=getattr(application, "name", None),
            )

        channel = getattr(message, "channel", None)
        return IncomingMessage(
            id=str(getattr(message, "id")),
            channel_id=str(getattr(channel, "id", "")),
            author=_to_user_ref(getattr(message, "author")),
            content=str(getattr(message, "content", "") or ""),
            attachments=_to_attachments(getattr(message, "attachments", [])),
            embeds=_to_embeds(getattr(message, "embeds", [])),
            stickers=_to_stickers(getattr(message, "stickers", [])),
            reply_to_id=reply_to_id,
            forwarded=forwarded,
            activity=activity,
            created_at=getattr(message, "created_at"),
        )

    # Gateway events

    def _register_gateway_handlers(self) -> None:
        if self._client is None:
            raise DeliveryFailure("Discord client not initialized")

        async def on_ready() -> None:
            logger.info("Discord messenger ready as %s", getattr(self._client, "user", None))
            self._ready_event.set()

        async def on_message(message: object) -> None:
            await self._handle_on_message(message)

        async def on_message_edit(before: object, after: object) -> None:
            await self._handle_on_message_edit(before, after)

        async def on_raw_message_delete(payload: object) -> None:
            await self._handle_on_message_delete(payload)

        self._client.event(on_ready)
        self._client.event(on_message)
        self._client.event(on_message_edit)
        self._client.event(on_raw_message_delete)

    def _is_inbox_channel(self, message: object) -> bool:
        guild = getattr(message, "guild", None)
        return guild is not None and str(getattr(guild, "id", "")) == str(self._inbox_server_id)

    async def _handle_on_message(self, message: object) -> None:
        if self._ctx is None:
            return
        author = getattr(message, "author", None)
        if author is None or getattr(author, "bot", False):
            return

        try:
            if getattr(message, "guild", None) is None:
                await inbox.handle_direct_message(self._ctx, self.to_incoming_message(message))
            elif self._is_inbox_channel(message):
                await inbox.handle_staff_message(self._ctx, self.to_incoming_message(message))
        except Exception as exc:  # pylint: disable=broad-exception-caught  # Gateway handlers must not die
            logger.error("Failed to handle message %s: %s", getattr(message, "id", "?"), exc, exc_info=True)

    async def _handle_on_message_edit(self, before: object, after: object) -> None:
        if self._ctx is None or getattr(getattr(after, "author", None), "bot", False):
            return
        try:
            await inbox.handle_message_edit(
                self._ctx, self.to_incoming_message(after), getattr(before, "content", None)
            )
        except Exception as exc:  # pylint: disable=broad-exception-caught  # Gateway handlers must not die
            logger.error("Failed to handle edit of %s: %s", getattr(after, "id", "?"), exc, exc_info=True)

    async def _handle_on_message_delete(self, payload: object) -> None:
        if self._ctx is None:
            return
        message_id = _id(getattr(payload, "message_id", None))
        channel_id = _id(getattr(payload, "channel_id", None))
        if not message_id or not channel_id:
            return
        try:
            await inbox.handle_message_delete(self._ctx, channel_id, message_id)
        except Exception as exc:  # pylint: disable=broad-exception-caught  # Gateway handlers must not die
            logger.error("Failed to handle deletion of %s: %s", message_id, exc, exc_info=True)
