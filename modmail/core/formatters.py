"""Renderers for relayed messages and staff-side notices.

Each renderer takes a ThreadMessage and returns the text posted to one side
of the relay. Role labels follow the same precedence everywhere: the global
display override, then the role stored on the message, then the fallback label.
"""

from __future__ import annotations

import re
from typing import Optional

from modmail.config import RelayConfig
from modmail.constants import INLINE_DIFF_MAX_CHARS, STICKER_URL_TEMPLATE, ZERO_WIDTH_SPACE
from modmail.core.dates import format_clock
from modmail.core.models import ForwardedMessage, MessageActivity, Sticker, ThreadMessage

_URL = re.compile(r"(https?://\S+)")

ORIGINAL_MESSAGE_KEY = "original_thread_message"
NEW_BODY_KEY = "new_body"


def disable_inline_code(text: str) -> str:
    return text.replace("`", "'")


def disable_code_blocks(text: str) -> str:
    return text.replace("`", "`" + ZERO_WIDTH_SPACE)


def disable_link_previews(text: str) -> str:
    """Wrap bare links in <> so the platform renders no preview."""
    return _URL.sub(r"<\1>", text)


def reply_role_name(message: ThreadMessage, relay: RelayConfig) -> Optional[str]:
    return relay.override_role_name_display or message.role_name or relay.fallback_role_name


def _with_attachments(text: str, message: ThreadMessage) -> str:
    for link in message.attachments:
        text += f"\n\n{link}"
    return text


def format_staff_reply_dm(message: ThreadMessage, relay: RelayConfig) -> str:
    """User-facing rendering of a staff reply. Anonymous replies show only the role."""
    role_name = reply_role_name(message, relay)
    if message.is_anonymous:
        mod_info = role_name
    elif role_name:
        mod_info = f"({role_name}) {message.user_name}"
    else:
        mod_info = message.user_name

    return f"**{mod_info}:** {message.body}" if mod_info else message.body


def format_staff_reply_thread_message(message: ThreadMessage, relay: RelayConfig) -> str:
    """Staff-side rendering of a staff reply, prefixed with its reply number."""
    role_name = reply_role_name(message, relay)
    if message.is_anonymous:
        mod_info = f"(Anonymous) ({message.user_name}) {role_name}" if role_name else f"(Anonymous) ({message.user_name})"
    elif role_name:
        mod_info = f"({role_name}) {message.user_name}"
    else:
        mod_info = message.user_name

    result = f"**{mod_info}:** {message.body}" if mod_info else message.body
    if relay.thread_timestamps:
        result = f"[{format_clock(message.created_at)}] {result}"

    return f"`{message.message_number}`  {result}"


def format_user_reply_thread_message(message: ThreadMessage, relay: RelayConfig) -> str:
    result = _with_attachments(f"**{message.user_name}:** {message.body}", message)
    if relay.thread_timestamps:
        result = f"[{format_clock(message.created_at)}] {result}"
    return result


def format_staff_reply_edit_notification(message: ThreadMessage) -> Optional[str]:
    """Audit notice for an edited reply; None when the original is not recorded."""
    original = message.original_message()
    if original is None:
        return None

    new_body = str(message.get_metadata_value(NEW_BODY_KEY) or "")
    content = f"**{original.user_name}** (`{original.user_id}`) edited reply `{original.message_number}`"

    if len(original.body) < INLINE_DIFF_MAX_CHARS and len(new_body) < INLINE_DIFF_MAX_CHARS:
        content += f" from `{disable_inline_code(original.body)}` to `{new_body}`"
    else:
        content += ":"
        content += f"\n\nBefore:\n```{disable_code_blocks(original.body)}```"
        content += f"\nAfter:\n```{disable_code_blocks(new_body)}```"

    return content


def format_staff_reply_deletion_notification(message: ThreadMessage) -> Optional[str]:
    """Audit notice for a deleted reply; None when the original is not recorded."""
    original = message.original_message()
    if original is None:
        return None

    content = f"**{original.user_name}** (`{original.user_id}`) deleted reply `{original.message_number}`"
    if len(original.body) < INLINE_DIFF_MAX_CHARS:
        content += f" (message content: `{disable_inline_code(original.body)}`)"
    else:
        content += f":\n```{disable_code_blocks(original.body)}```"

    return content


def format_system_thread_message(message: ThreadMessage) -> str:
    return _with_attachments(message.body, message)


def format_system_to_user_thread_message(message: ThreadMessage, bot_name: str) -> str:
    return _with_attachments(f"**⚙️ {bot_name}:** {message.body}", message)


def format_system_to_user_dm(message: ThreadMessage) -> str:
    return _with_attachments(message.body, message)


_ACTIVITY_TEXT = {
    "join": "join a game",
    "join_request": "join a game",
    "spectate": "spectate",
    "listen": "listen along",
}


def sticker_url(sticker: Sticker) -> str:
    return STICKER_URL_TEMPLATE.format(sticker_id=sticker.id)


def format_sticker_lines(stickers: list[Sticker]) -> str:
    return "\n".join(f'*Sent sticker "{sticker.name}":* {sticker_url(sticker)}' for sticker in stickers)


def format_activity(activity: MessageActivity) -> str:
    application = activity.application_name
    if not application and activity.party_id and activity.party_id.startswith("spotify:"):
        application = "Spotify"
    action = _ACTIVITY_TEXT.get(activity.kind, "do something")
    return f"*<This message contains an invite to {action} on {application or 'Unknown Application'}>*"


def format_forwarded(forward: ForwardedMessage) -> str:
    """Quote block describing a forwarded message."""
    text = forward.content
    if forward.stickers:
        sticker_text = "\n".join(f"Sticker **[{s.name}]({sticker_url(s)})**" for s in forward.stickers)
        text = f"{text}\n{sticker_text}" if text else sticker_text
    if not text:
        text = "Message contains only embeds"

    quoted = text.replace("\n", "\n> ")
    result = f"\n\n> -# *↪ Forwarded from {forward.guild_name or 'direct messages'}*\n> {quoted}"
    footer: list[str] = []
    if forward.url:
        footer.append(f"[Source]({forward.url})")
    if forward.created_at:
        footer.append(f"<t:{int(forward.created_at.timestamp())}:f>")
    if footer:
        result += "\n> -# " + "  •  ".join(footer)
    return result
