"""Error taxonomy for relay operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class ModmailError(Exception):
    """Base exception for relay errors."""


class ConflictError(ModmailError):
    """The operation would leave two open threads for one user."""


class AlreadyOpenError(ConflictError):
    """Thread creation was requested for a user who already has an open thread."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} already has an open thread")
        self.user_id = user_id


class DeliveryFailure(ModmailError):
    """Sending to the user or to the staff channel failed."""


class ChannelNotFoundError(DeliveryFailure):
    """The staff-side channel no longer exists."""


class ChannelNameRejectedError(DeliveryFailure):
    """The platform refused the channel name."""


class UserUnreachableError(DeliveryFailure):
    """The user cannot receive DMs (blocked the bot or strict privacy settings)."""


class ValidationFailure(ModmailError):
    """A staff request was rejected before anything was sent or stored."""


class ReplyTooLongError(ValidationFailure):
    """A rendered reply does not fit in one message."""


class UnknownSnippetError(ValidationFailure):
    """An inline snippet reference has no stored snippet."""

    def __init__(self, triggers: list[str]) -> None:
        super().__init__(f"The following snippets used in the reply do not exist:\n{', '.join(triggers)}")
        self.triggers = triggers


class NotFoundError(ModmailError):
    """A message-number or correlation lookup missed."""


class NotAuthorError(ModmailError):
    """Only the original author may edit or delete a staff reply."""


@dataclass
class PolicyDecline:
    """Thread creation was declined by an eligibility gate or a hook.

    Returned, not raised: a decline is an expected outcome.
    """

    reason: str
    message: Optional[str] = None
