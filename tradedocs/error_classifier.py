"""
Delivery Error Classifier

Maps a raw provider error into one of a fixed set of user-facing problem
categories, each carrying a title, a one-line explanation and a suggested fix.

Classification runs three explicit tables in order and stops at the first hit:
    1. EXCEPTION_RULES  -- exception type   -> category
    2. CODE_RULES       -- provider code    -> category
    3. PATTERN_RULES    -- message regex    -> category  (ordered)
Anything left over is UNKNOWN.
"""

from __future__ import annotations

import re
import smtplib
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .errors import UserMessage


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

class ErrorCategory(str, Enum):
    AUTH_EXPIRED = "auth_expired"
    SENDER_NOT_CONFIGURED = "sender_not_configured"
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    INVALID_RECIPIENT = "invalid_recipient"
    DOCUMENT_PREPARATION = "document_preparation"
    UNKNOWN = "unknown"


# Copy shown to the business owner for each category.
CATEGORY_ADVICE: dict[ErrorCategory, UserMessage] = {
    ErrorCategory.AUTH_EXPIRED: UserMessage(
        title="Email Login Expired",
        message="Your email login needs to be refreshed.",
        fix="Go to Settings → Email Integration and reconnect your email account. "
            "Your password or login may have changed.",
    ),
    ErrorCategory.SENDER_NOT_CONFIGURED: UserMessage(
        title="Email Not Set Up",
        message="Email sending isn't configured yet.",
        fix="Go to Settings → Email Integration and connect your Gmail or Outlook account. "
            "This lets you send quotes and invoices directly from your own email address.",
    ),
    ErrorCategory.NETWORK: UserMessage(
        title="Connection Issue",
        message="Couldn't connect to the email service.",
        fix="Check your internet connection and try again in a few minutes. If this keeps "
            "happening, go to Settings → Email Integration to reconnect your email.",
    ),
    ErrorCategory.RATE_LIMITED: UserMessage(
        title="Too Many Emails",
        message="You've sent too many emails in a short time.",
        fix="Wait 5-10 minutes and try again. Email services limit how many emails "
            "you can send to prevent spam.",
    ),
    ErrorCategory.INVALID_RECIPIENT: UserMessage(
        title="Invalid Email Address",
        message="The client's email address doesn't look right.",
        fix="Check the client's email address is correct (e.g., john@email.com). "
            "Go to Clients and update their email address.",
    ),
    ErrorCategory.DOCUMENT_PREPARATION: UserMessage(
        title="Couldn't Prepare Document",
        message="We couldn't create the PDF for this document.",
        fix="Try again in a minute. If it keeps failing, check the line items and "
            "business details for anything unusual.",
    ),
    ErrorCategory.UNKNOWN: UserMessage(
        title="Couldn't Send Email",
        message="There was a problem sending this email.",
        fix="Go to Settings → Email Integration and connect your Gmail or Outlook account. "
            "This is the easiest way to make sure emails work reliably.",
    ),
}

# Permission problems share the auth remedy but say "reconnect" rather than
# "login expired".
_PERMISSION_ADVICE = UserMessage(
    title="Email Setup Needed",
    message="Your email service needs to be reconnected.",
    fix="Go to Settings → Email Integration and reconnect your email account. "
        "This will refresh your email permissions.",
)


# ---------------------------------------------------------------------------
# Typed provider error
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderError:
    """Error reported by a channel or accounting client without raising."""

    message: str
    code: Optional[str] = None
    provider: str = ""

    def __str__(self) -> str:
        prefix = f"[{self.code}] " if self.code else ""
        return f"{prefix}{self.message}"


RawError = Union[BaseException, ProviderError, str, None]


# ---------------------------------------------------------------------------
# Classification tables
# ---------------------------------------------------------------------------

# Subclasses must come before their bases (SMTPAuthenticationError is an
# SMTPResponseException, socket.timeout is an OSError).
EXCEPTION_RULES: list[tuple[type[BaseException], ErrorCategory]] = [
    (smtplib.SMTPAuthenticationError, ErrorCategory.AUTH_EXPIRED),
    (smtplib.SMTPRecipientsRefused, ErrorCategory.INVALID_RECIPIENT),
    (smtplib.SMTPSenderRefused, ErrorCategory.SENDER_NOT_CONFIGURED),
    (TimeoutError, ErrorCategory.NETWORK),
    (socket.timeout, ErrorCategory.NETWORK),
    (ConnectionError, ErrorCategory.NETWORK),
    (smtplib.SMTPServerDisconnected, ErrorCategory.NETWORK),
    (smtplib.SMTPConnectError, ErrorCategory.NETWORK),
]

CODE_RULES: dict[str, ErrorCategory] = {
    "EAUTH": ErrorCategory.AUTH_EXPIRED,
    "401": ErrorCategory.AUTH_EXPIRED,
    "403": ErrorCategory.SENDER_NOT_CONFIGURED,
    "429": ErrorCategory.RATE_LIMITED,
    "ETIMEDOUT": ErrorCategory.NETWORK,
    "ECONNREFUSED": ErrorCategory.NETWORK,
    "ECONNRESET": ErrorCategory.NETWORK,
    "EENVELOPE": ErrorCategory.INVALID_RECIPIENT,
}

# Ordered: the first matching pattern wins.  "oauth" contains "auth", so the
# permission row must precede the generic auth row.
PATTERN_RULES: list[tuple[re.Pattern[str], ErrorCategory, bool]] = [
    (re.compile(r"insufficient permission|oauth|scope"), ErrorCategory.AUTH_EXPIRED, True),
    (re.compile(r"bad request|sender|forbidden|403"), ErrorCategory.SENDER_NOT_CONFIGURED, False),
    (re.compile(r"network|timeout|timed out|econnrefused"), ErrorCategory.NETWORK, False),
    (re.compile(r"authentication|auth|password"), ErrorCategory.AUTH_EXPIRED, False),
    (re.compile(r"rate limit|too many"), ErrorCategory.RATE_LIMITED, False),
    (re.compile(r"invalid.*email|email.*invalid", re.DOTALL), ErrorCategory.INVALID_RECIPIENT, False),
]


# ---------------------------------------------------------------------------
# Classification Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClassifiedError:
    """
    The outcome of classifying one raw error.

    Attributes:
        category: The fixed problem category.
        title: Plain-language headline.
        message: One-line explanation.
        fix: Actionable remedy.
        raw: The original error text, kept for logs.
    """
    category: ErrorCategory
    title: str
    message: str
    fix: str
    raw: str = ""

    def as_user_message(self) -> UserMessage:
        return UserMessage(title=self.title, message=self.message, fix=self.fix)

    def to_dict(self) -> dict[str, str]:
        return {
            "category": self.category.value,
            "title": self.title,
            "message": self.message,
            "fix": self.fix,
        }


def _build(category: ErrorCategory, raw: str, permission: bool = False) -> ClassifiedError:
    advice = _PERMISSION_ADVICE if permission else CATEGORY_ADVICE[category]
    return ClassifiedError(
        category=category,
        title=advice.title,
        message=advice.message,
        fix=advice.fix,
        raw=raw,
    )


# ---------------------------------------------------------------------------
# Core Classification Functions
# ---------------------------------------------------------------------------

def category_for_text(text: str) -> tuple[ErrorCategory, bool]:
    """Run the ordered pattern table over an error message.

    Returns:
        (category, is_permission_row).  UNKNOWN when nothing matches.
    """
    lowered = text.lower()
    for pattern, category, permission in PATTERN_RULES:
        if pattern.search(lowered):
            return category, permission
    return ErrorCategory.UNKNOWN, False


def classify(raw: RawError) -> ClassifiedError:
    """
    Classify a raw provider error.

    Args:
        raw: An exception raised by a channel, a ProviderError returned by
            one, a bare message string, or None.

    Returns:
        ClassifiedError with the category and its title/message/fix.

    Examples:
        >>> classify(TimeoutError("timed out")).category
        <ErrorCategory.NETWORK: 'network'>

        >>> classify(ProviderError("Too Many Requests", code="429")).title
        'Too Many Emails'

        >>> classify("Invalid email address").category
        <ErrorCategory.INVALID_RECIPIENT: 'invalid_recipient'>
    """
    if raw is None:
        return _build(ErrorCategory.UNKNOWN, "unknown error")

    if isinstance(raw, BaseException):
        text = str(raw) or type(raw).__name__
        for exc_type, category in EXCEPTION_RULES:
            if isinstance(raw, exc_type):
                return _build(category, text)
        category, permission = category_for_text(text)
        return _build(category, text, permission)

    if isinstance(raw, ProviderError):
        text = str(raw)
        if raw.code and raw.code.upper() in CODE_RULES:
            return _build(CODE_RULES[raw.code.upper()], text)
        category, permission = category_for_text(raw.message)
        return _build(category, text, permission)

    category, permission = category_for_text(str(raw))
    return _build(category, str(raw), permission)


def preparation_error(raw: RawError) -> ClassifiedError:
    """Classification used when the renderer or artifact store fails."""
    return _build(ErrorCategory.DOCUMENT_PREPARATION, str(raw) if raw is not None else "")
