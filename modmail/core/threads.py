"""Thread creation for users messaging the relay.

Creation runs through the context's ThreadCreationSerializer so the open-thread
check, thread_number assignment and channel creation for one request finish
before the next request looks at the store.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from instrukt_ai_logging import get_logger

from modmail.constants import FALLBACK_CHANNEL_NAME, UNICODE_PERIOD, UNKNOWN_CHANNEL_NAME
from modmail.core.context import ModmailContext
from modmail.core.dates import humanize_delta, utc_now
from modmail.core.errors import AlreadyOpenError, ChannelNameRejectedError, DeliveryFailure, PolicyDecline
from modmail.core.hooks import BeforeNewThreadContext, HookName
from modmail.core.models import GuildMembership, IncomingMessage, Thread, UserRef
from modmail.core.thread import ThreadController

logger = get_logger(__name__)

_DISALLOWED_CHANNEL_CHARS = re.compile(f"[^a-z0-9 _{UNICODE_PERIOD}]")
_WHITESPACE = re.compile(r"\s+")


def format_username(name: str) -> str:
    """Derive a channel name from a username.

    Accents are stripped, "." becomes a look-alike the platform accepts, and
    anything outside lowercase letters, digits and "_" is dropped.
    """
    decomposed = unicodedata.normalize("NFKD", str(name))
    without_marks = "".join(c for c in decomposed if not unicodedata.combining(c))
    channel_name = without_marks.replace(".", UNICODE_PERIOD).strip().lower()
    channel_name = _DISALLOWED_CHANNEL_CHARS.sub("", channel_name)
    channel_name = _WHITESPACE.sub("_", channel_name)
    return channel_name or UNKNOWN_CHANNEL_NAME


def mention_roles_to_mention(roles: Sequence[str]) -> str:
    mentions = []
    for role in roles:
        if role == "here":
            mentions.append("@here")
        elif role == "everyone":
            mentions.append("@everyone")
        else:
            mentions.append(f"<@&{role}>")
    return " ".join(mentions)


@dataclass
class CreateThreadOptions:
    """Options for create_new_thread_for_user.

    Attributes:
        quiet: Skip the staff mention
        ignore_requirements: Bypass account-age and time-on-server gates
        ignore_hooks: Skip beforeNewThread hooks
        source: Where the request came from (e.g. "dm", "command")
        category_id: Explicit destination category
        channel_name: Explicit channel name (derived from the username otherwise)
        mention_role: Roles to mention instead of the configured ones
        message: The message that triggered creation, if any
    """

    quiet: bool = False
    ignore_requirements: bool = False
    ignore_hooks: bool = False
    source: str = "dm"
    category_id: Optional[str] = None
    channel_name: Optional[str] = None
    mention_role: Optional[list[str]] = None
    message: Optional[IncomingMessage] = None


async def create_new_thread_for_user(
    ctx: ModmailContext, user: UserRef, opts: Optional[CreateThreadOptions] = None
) -> Thread | PolicyDecline:
    """Queue thread creation behind every earlier creation request.

    Raises:
        AlreadyOpenError: The user already has an open thread
    """
    options = opts or CreateThreadOptions()
    return await ctx.creation_queue.submit(lambda: create_thread_now(ctx, user, options))


async def _decline(ctx: ModmailContext, user: UserRef, reason: str, message: Optional[str]) -> PolicyDecline:
    logger.info("Thread creation for %s declined: %s", user.id, reason)
    if message:
        try:
            await ctx.messenger.send_dm(user.id, message)
        except DeliveryFailure as e:
            logger.warning("Could not send decline message to %s: %s", user.id, e)
    return PolicyDecline(reason=reason, message=message)


def _account_too_new(user: UserRef, min_age_hours: Optional[float], now: datetime) -> bool:
    if not min_age_hours or user.created_at is None:
        return False
    return user.created_at >= now - timedelta(hours=min_age_hours)


def _joined_too_recently(memberships: list[GuildMembership], min_minutes: Optional[float], now: datetime) -> bool:
    if not min_minutes or not memberships:
        # Not seen on any main server; missing data is not held against the user
        return False
    required = now - timedelta(minutes=min_minutes)
    return not any((m.joined_at or now) < required for m in memberships)


async def create_thread_now(ctx: ModmailContext, user: UserRef, opts: CreateThreadOptions) -> Thread | PolicyDecline:
    """Create a thread; callers must already be inside the creation serializer.

    Returns:
        The new thread, or a PolicyDecline if a gate or hook declined
    """
    existing = await ctx.db.find_open_thread_by_user(user.id)
    if existing is not None:
        raise AlreadyOpenError(user.id)

    requirements = ctx.config.requirements
    now = utc_now()
    if not opts.ignore_requirements and _account_too_new(user, requirements.account_age_hours, now):
        return await _decline(ctx, user, "account_age", requirements.account_age_denied_message)

    memberships = await ctx.messenger.get_guild_memberships(user.id)
    if not opts.ignore_requirements and _joined_too_recently(memberships, requirements.time_on_server_minutes, now):
        return await _decline(ctx, user, "time_on_server", requirements.time_on_server_denied_message)

    channel_name = opts.channel_name or format_username(user.username)
    category_id = opts.category_id
    if not opts.ignore_hooks:
        hook_ctx = BeforeNewThreadContext(
            user=user,
            message=opts.message,
            source=opts.source,
            category_id=opts.category_id,
            channel_name=channel_name,
        )
        await ctx.hooks.run(HookName.BEFORE_NEW_THREAD, hook_ctx)
        if hook_ctx.cancelled:
            return await _decline(ctx, user, "hook", None)
        channel_name = hook_ctx.channel_name or channel_name
        category_id = hook_ctx.category_id or category_id

    category_id = category_id or _category_for(ctx, memberships)

    logger.info("Creating new thread channel %s for %s", channel_name, user.id)
    try:
        channel_id = await ctx.messenger.create_channel(channel_name, category_id)
    except ChannelNameRejectedError:
        logger.warning("Channel name %s rejected, retrying with %s", channel_name, FALLBACK_CHANNEL_NAME)
        channel_id = await ctx.messenger.create_channel(FALLBACK_CHANNEL_NAME, category_id)

    thread = await ctx.db.create_thread(user.id, user.username, channel_id, metadata={"source": opts.source})
    controller = ThreadController(ctx, thread)
    if not opts.quiet:
        roles = opts.mention_role if opts.mention_role is not None else ctx.config.discord.mention_role
        mention = mention_roles_to_mention(roles)
        if mention:
            await controller.post_non_log_message(mention, mention_roles=roles)

    await controller.post_system_message(
        await build_info_header(ctx, user, memberships), mention_user_ids=_header_mentions(ctx, user)
    )
    return controller.thread


def _category_for(ctx: ModmailContext, memberships: list[GuildMembership]) -> Optional[str]:
    by_server = ctx.config.discord.category_by_server
    for membership in memberships:
        if membership.guild_id in by_server:
            return by_server[membership.guild_id]
    return ctx.config.discord.default_category_id


def _header_mentions(ctx: ModmailContext, user: UserRef) -> list[str]:
    return [user.id] if ctx.config.relay.mention_user_in_thread_header else []


async def build_info_header(ctx: ModmailContext, user: UserRef, memberships: list[GuildMembership]) -> str:
    """Render the first message of a new thread: who the user is and their history here."""
    now = utc_now()
    parts: list[str] = []
    if ctx.config.relay.mention_user_in_thread_header:
        parts.append(f"<@!{user.id}>")

    age = f"ACCOUNT AGE **{humanize_delta(now - user.created_at)}**, " if user.created_at else ""
    parts.append(f"{age}ID **{user.id}**")

    for membership in memberships:
        line = f"**[{membership.guild_name}]**"
        if membership.nickname:
            line += f" NICKNAME `{membership.nickname}`,"
        if membership.joined_at:
            line += f" JOINED **{humanize_delta(now - membership.joined_at)}** ago"
        if membership.role_names:
            line += f", ROLES **{', '.join(membership.role_names)}**"
        parts.append(line.rstrip(","))

    prefix = ctx.config.relay.prefix
    previous = await ctx.db.count_closed_threads_by_user(user.id)
    if previous:
        noun = "thread" if previous == 1 else "threads"
        parts.append(f"This user has **{previous}** previous modmail {noun}. Use `{prefix}logs` to see them.")

    notes = await ctx.db.count_notes(user.id)
    if notes:
        noun = "note" if notes == 1 else "notes"
        parts.append(f"This user has **{notes}** {noun}. Use `{prefix}notes` to see them.")

    parts.append("────────────────")
    return "\n".join(parts)
