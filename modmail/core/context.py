"""Service bundle shared by the relay operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from modmail.config import Config
from modmail.core.attachments import AttachmentStore, create_attachment_store
from modmail.core.creation_queue import ThreadCreationSerializer
from modmail.core.hooks import AfterThreadCloseContext, HookContext, HookName, HookRegistry
from modmail.core.logs import LogManager, create_log_storage
from modmail.core.protocols import ChannelMessenger
from modmail.core.task_registry import TaskRegistry

if TYPE_CHECKING:
    from modmail.core.db import Db


@dataclass
class ModmailContext:
    """Everything a thread operation touches besides the thread itself."""

    config: Config
    db: "Db"
    messenger: ChannelMessenger
    attachments: AttachmentStore
    logs: LogManager
    hooks: HookRegistry = field(default_factory=HookRegistry)
    tasks: TaskRegistry = field(default_factory=TaskRegistry)
    creation_queue: ThreadCreationSerializer = field(default_factory=ThreadCreationSerializer)

    @property
    def bot_name(self) -> str:
        return self.config.discord.bot_name


def build_context(config: Config, db: "Db", messenger: ChannelMessenger) -> ModmailContext:
    """Wire the configured storage strategies around a database and messenger."""
    ctx = ModmailContext(
        config=config,
        db=db,
        messenger=messenger,
        attachments=create_attachment_store(config.attachments, messenger, config.web.url),
        logs=LogManager(db, create_log_storage(config.logs, config.web.url)),
    )
    register_builtin_hooks(ctx)
    return ctx


def register_builtin_hooks(ctx: ModmailContext) -> None:
    """Persist the transcript once a thread closes."""

    async def save_log_after_close(hook_ctx: HookContext) -> None:
        if not isinstance(hook_ctx, AfterThreadCloseContext):
            return
        thread = await ctx.db.get_thread(hook_ctx.thread_id)
        if thread is not None:
            await ctx.logs.save_log_to_storage(thread)

    ctx.hooks.register(HookName.AFTER_THREAD_CLOSE, save_log_after_close)
