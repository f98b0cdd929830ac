"""Staff display names and display-role labels for replies.

Role precedence: per-thread override, then the moderator's default override,
then the moderator's highest hoisted role, then the configured fallback.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Optional

from modmail.config import RelayConfig
from modmail.core.models import StaffMember, Thread, UserRef

if TYPE_CHECKING:
    from modmail.core.db import Db

THREAD_ROLE_OVERRIDES_KEY = "role_overrides"

_NAME_FORMATTING = re.compile(r"[_`~*|]")


def user_display_name(user: UserRef, relay: RelayConfig) -> str:
    return user.display_name(relay.use_display_names)


def moderator_display_name(moderator: StaffMember, relay: RelayConfig) -> str:
    """Name shown on a staff reply, with markdown escaped when configured."""
    name = user_display_name(moderator, relay)
    if relay.use_nicknames and moderator.nickname:
        name = moderator.nickname
    if relay.break_formatting_for_names:
        name = _NAME_FORMATTING.sub(lambda m: "\\" + m.group(0), name)
    return name


async def get_moderator_default_display_role_name(
    db: "Db", moderator: StaffMember, relay: RelayConfig
) -> Optional[str]:
    override = await db.get_moderator_role_override(moderator.id)
    return override or moderator.highest_hoisted_role or relay.fallback_role_name


def get_thread_role_override(thread: Thread, moderator_id: str) -> Optional[str]:
    overrides = thread.get_metadata_value(THREAD_ROLE_OVERRIDES_KEY)
    if not isinstance(overrides, dict):
        return None
    value = overrides.get(moderator_id)
    return str(value) if value else None


async def get_moderator_thread_display_role_name(
    db: "Db", moderator: StaffMember, thread: Thread, relay: RelayConfig
) -> Optional[str]:
    return get_thread_role_override(thread, moderator.id) or await get_moderator_default_display_role_name(
        db, moderator, relay
    )


async def set_moderator_thread_role_override(db: "Db", thread: Thread, moderator_id: str, role_name: str) -> None:
    overrides = thread.get_metadata_value(THREAD_ROLE_OVERRIDES_KEY)
    overrides = dict(overrides) if isinstance(overrides, dict) else {}
    overrides[moderator_id] = role_name
    thread.metadata[THREAD_ROLE_OVERRIDES_KEY] = overrides
    await db.update_thread(thread.id, metadata=thread.metadata)


async def reset_moderator_thread_role_override(db: "Db", thread: Thread, moderator_id: str) -> None:
    overrides = thread.get_metadata_value(THREAD_ROLE_OVERRIDES_KEY)
    if not isinstance(overrides, dict) or moderator_id not in overrides:
        return
    overrides = {k: v for k, v in overrides.items() if k != moderator_id}
    thread.metadata[THREAD_ROLE_OVERRIDES_KEY] = overrides
    await db.update_thread(thread.id, metadata=thread.metadata)
