"""Idempotency guard for lifecycle actions.

Runs before any rendering or network call: rejecting a duplicate costs one
storage read.  ``force=True`` is the only way past a satisfied postcondition.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .errors import AlreadyInTargetState, UserMessage, format_when
from .models import Document, DocumentStatus


class Action(str, Enum):
    SEND = "send"
    MARK_PAID = "mark_paid"
    ACCEPT = "accept"
    DECLINE = "decline"
    CANCEL = "cancel"


# Postcondition per action, and the timestamp that proves it happened.
_POSTCONDITIONS: dict[Action, tuple[Callable[[Document], bool], Callable[[Document], Optional[datetime]]]] = {
    Action.SEND: (lambda d: d.status is not DocumentStatus.DRAFT, lambda d: d.sent_at),
    Action.MARK_PAID: (lambda d: d.status is DocumentStatus.PAID, lambda d: d.paid_at),
    Action.ACCEPT: (lambda d: d.status is DocumentStatus.ACCEPTED, lambda d: d.accepted_at),
    Action.DECLINE: (lambda d: d.status is DocumentStatus.DECLINED, lambda d: d.declined_at),
    Action.CANCEL: (lambda d: d.status is DocumentStatus.CANCELLED, lambda d: d.cancelled_at),
}


def is_satisfied(document: Document, action: Action) -> bool:
    """True if ``action`` has already taken effect on ``document``."""
    satisfied, _ = _POSTCONDITIONS[action]
    return satisfied(document)


def _rejection(document: Document, action: Action, when: Optional[datetime]) -> UserMessage:
    label = document.kind.label
    noun = label.lower()
    on = format_when(when)

    if action is Action.SEND:
        return UserMessage(
            title=f"{label} Already Sent",
            message=f"This {noun} was already sent on {on}.",
            fix="If you want to send it again, use the 'Resend' option instead.",
        )
    if action is Action.MARK_PAID:
        return UserMessage(
            title="Already Paid",
            message=f"This {noun} was marked as paid on {on}.",
            fix="No action needed - the payment is already recorded.",
        )
    if action is Action.ACCEPT:
        return UserMessage(
            title=f"{label} Already Accepted",
            message=f"This {noun} was accepted on {on}.",
            fix="No action needed. You can turn it into a job or invoice.",
        )
    if action is Action.DECLINE:
        return UserMessage(
            title=f"{label} Already Declined",
            message=f"This {noun} was declined on {on}.",
            fix="Create a new quote if the client wants to revisit the work.",
        )
    return UserMessage(
        title=f"{label} Already Cancelled",
        message=f"This {noun} was cancelled on {on}.",
        fix="No action needed.",
    )


class IdempotencyGuard:
    """Rejects actions that would repeat a completed transition."""

    def guard(self, document: Document, action: Action, force: bool = False) -> None:
        """Pass through, or raise AlreadyInTargetState with the prior timestamp.

        Args:
            document: Freshly read from storage.
            action: The transition being requested.
            force: Explicit caller opt-in to repeat the action (resend).

        Raises:
            AlreadyInTargetState: The postcondition holds and force is False.
        """
        if force or not is_satisfied(document, action):
            return
        _, timestamp_of = _POSTCONDITIONS[action]
        when = timestamp_of(document)
        raise AlreadyInTargetState(_rejection(document, action, when), prior_timestamp=when)
