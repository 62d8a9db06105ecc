"""Caller-facing errors raised by the lifecycle operations.

Every error carries a plain-language title, a one-line explanation and an
actionable fix, so HTTP handlers can return ``err.to_dict()`` verbatim.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .error_classifier import ClassifiedError
    from .models import DeliveryAttempt


@dataclass(frozen=True)
class UserMessage:
    title: str
    message: str
    fix: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def format_when(ts: Optional[datetime]) -> str:
    """Format a transition timestamp as '05 Mar 2026'."""
    if ts is None:
        return "an earlier date"
    return ts.strftime("%d %b %Y")


class LifecycleError(Exception):
    """Base for every error surfaced to the caller."""

    def __init__(self, detail: UserMessage):
        super().__init__(f"{detail.title}: {detail.message}")
        self.detail = detail

    @property
    def title(self) -> str:
        return self.detail.title

    def to_dict(self) -> dict[str, str]:
        return self.detail.to_dict()


# ---------------------------------------------------------------------------
# Precondition errors -- raised before any side effect runs
# ---------------------------------------------------------------------------

class PreconditionError(LifecycleError):
    pass


class NotFound(PreconditionError):

    @classmethod
    def document(cls, kind_label: str = "Document") -> NotFound:
        return cls(UserMessage(
            title=f"{kind_label} Not Found",
            message=f"We couldn't find this {kind_label.lower()}.",
            fix=f"The {kind_label.lower()} may have been deleted. "
                f"Go back to your {kind_label}s list and try again.",
        ))

    @classmethod
    def client(cls, kind_label: str = "document") -> NotFound:
        return cls(UserMessage(
            title="Client Not Found",
            message=f"The client for this {kind_label.lower()} no longer exists.",
            fix=f"Update the {kind_label.lower()} to select a different client, "
                "or recreate the client in your Clients list.",
        ))


class AlreadyInTargetState(PreconditionError):
    """The requested transition has already happened."""

    def __init__(self, detail: UserMessage, prior_timestamp: Optional[datetime] = None):
        super().__init__(detail)
        self.prior_timestamp = prior_timestamp


class MissingContactInfo(PreconditionError):

    @classmethod
    def email(cls, client_name: str) -> MissingContactInfo:
        return cls(UserMessage(
            title="Client Email Missing",
            message=f"{client_name} doesn't have an email address.",
            fix=f"Go to Clients → {client_name} → Edit and add their email address.",
        ))


class MissingBusinessProfile(PreconditionError):

    @classmethod
    def profile(cls) -> MissingBusinessProfile:
        return cls(UserMessage(
            title="Business Setup Incomplete",
            message="Your business details haven't been set up yet.",
            fix="Go to Settings and complete your business profile before sending.",
        ))

    @classmethod
    def email(cls) -> MissingBusinessProfile:
        return cls(UserMessage(
            title="Business Email Missing",
            message="Your business email isn't set up.",
            fix="Go to Settings → Business Profile and add your business email address.",
        ))


class InvalidTransition(PreconditionError):

    @classmethod
    def between(cls, kind_label: str, current: str, action: str) -> InvalidTransition:
        return cls(UserMessage(
            title=f"Can't {action.replace('_', ' ').title()} This {kind_label}",
            message=f"This {kind_label.lower()} is {current}, so it can't be {_past(action)}.",
            fix=f"Check the {kind_label.lower()}'s status and try a different action.",
        ))


class InvalidSignature(PreconditionError):

    @classmethod
    def missing(cls) -> InvalidSignature:
        return cls(UserMessage(
            title="Signature Required",
            message="A signer name and signature are needed to respond to this quote.",
            fix="Ask the client to type their name and sign before submitting.",
        ))


class ActionInProgress(PreconditionError):

    @classmethod
    def sending(cls, kind_label: str) -> ActionInProgress:
        return cls(UserMessage(
            title=f"{kind_label} Already Sending",
            message=f"This {kind_label.lower()} is being sent right now.",
            fix="Wait a moment and refresh. It will show as sent once delivery finishes.",
        ))


def _past(action: str) -> str:
    return {
        "send": "sent",
        "mark_paid": "marked as paid",
        "accept": "accepted",
        "decline": "declined",
        "cancel": "cancelled",
        "remind": "reminded",
    }.get(action, action)


# ---------------------------------------------------------------------------
# Pipeline failures
# ---------------------------------------------------------------------------

class DocumentPreparationError(LifecycleError):
    """Rendering or artifact storage failed; the send is aborted."""

    def __init__(self, detail: UserMessage, cause: Optional[BaseException] = None):
        super().__init__(detail)
        self.cause = cause


class DeliveryFailed(LifecycleError):
    """Every channel in the ordering failed."""

    def __init__(self, classified: ClassifiedError, attempts: list[DeliveryAttempt] | None = None):
        super().__init__(classified.as_user_message())
        self.classified = classified
        self.attempts = list(attempts or [])


@dataclass
class SideEffectError(Exception):
    """Raised inside a side-effect task when a collaborator reports failure."""

    task: str
    reason: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.task}: {self.reason}"
