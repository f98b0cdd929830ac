"""Ordered hook chains around thread creation, message receipt, and closing.

Handlers run one at a time in registration order; each is awaited before the
next. Handlers of the cancellable hooks get a context with `cancel()` and the
chain stops at the first cancellation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from instrukt_ai_logging import get_logger

if TYPE_CHECKING:
    from modmail.core.models import IncomingMessage, Thread, UserRef

logger = get_logger(__name__)


class HookName(str, Enum):
    BEFORE_NEW_THREAD = "beforeNewThread"
    BEFORE_NEW_MESSAGE_RECEIVED = "beforeNewMessageReceived"
    AFTER_NEW_MESSAGE_RECEIVED = "afterNewMessageReceived"
    AFTER_THREAD_CLOSE = "afterThreadClose"
    AFTER_THREAD_CLOSE_SCHEDULED = "afterThreadCloseScheduled"
    AFTER_THREAD_CLOSE_SCHEDULE_CANCELED = "afterThreadCloseScheduleCanceled"


@dataclass
class HookContext:
    """Base context; only cancellable hooks honour `cancel()`."""

    cancelled: bool = field(default=False, init=False)

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class BeforeNewThreadContext(HookContext):
    user: Optional["UserRef"] = None
    message: Optional["IncomingMessage"] = None
    source: Optional[str] = None
    category_id: Optional[str] = None
    channel_name: Optional[str] = None

    def set_category_id(self, category_id: str) -> None:
        self.category_id = category_id

    def set_channel_name(self, name: str) -> None:
        self.channel_name = name


@dataclass
class BeforeNewMessageReceivedContext(HookContext):
    user: Optional["UserRef"] = None
    message: Optional["IncomingMessage"] = None
    thread: Optional["Thread"] = None


@dataclass
class AfterNewMessageReceivedContext(HookContext):
    user: Optional["UserRef"] = None
    message: Optional["IncomingMessage"] = None
    thread: Optional["Thread"] = None


@dataclass
class AfterThreadCloseContext(HookContext):
    thread_id: str = ""


@dataclass
class ThreadScheduleContext(HookContext):
    """Context for afterThreadCloseScheduled and afterThreadCloseScheduleCanceled."""

    thread: Optional["Thread"] = None


HookHandler = Callable[[HookContext], Awaitable[None]]


class HookRegistry:
    """Registry of ordered async handlers per hook name."""

    def __init__(self) -> None:
        self._handlers: dict[HookName, list[HookHandler]] = {}

    def register(self, hook: HookName, handler: HookHandler) -> None:
        """Append a handler to a hook chain."""
        self._handlers.setdefault(hook, []).append(handler)
        logger.debug("Registered handler for hook: %s (total: %d)", hook.value, len(self._handlers[hook]))

    def unregister(self, hook: HookName, handler: HookHandler) -> None:
        handlers = self._handlers.get(hook, [])
        if handler in handlers:
            handlers.remove(handler)

    def clear(self) -> None:
        """Clear all registered handlers (primarily for tests)."""
        self._handlers.clear()

    async def run(self, hook: HookName, context: HookContext) -> HookContext:
        """Invoke the chain for a hook.

        Handler exceptions propagate to the caller; the operation that fired the
        hook decides whether that aborts it.

        Args:
            hook: Hook to run
            context: Mutable context handed to every handler

        Returns:
            The same context, after all handlers (or up to the cancelling one)
        """
        for handler in list(self._handlers.get(hook, [])):
            await handler(context)
            if context.cancelled:
                logger.debug("Hook %s cancelled by %s", hook.value, getattr(handler, "__name__", handler))
                break
        return context
