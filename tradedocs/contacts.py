"""Client contact helpers: mobile validation, E.164 formatting, greetings.

Phone numbers are validated against the national mobile pattern before any
SMS is attempted; a number that fails is skipped, never treated as a send
failure.
"""

from __future__ import annotations

import re
from typing import Optional

from .config import ContactRules
from .models import Client

_NON_DIGITS = re.compile(r"\D")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def digits_only(phone: str | None) -> str:
    return _NON_DIGITS.sub("", phone or "")


def is_valid_mobile(phone: str | None, rules: ContactRules | None = None) -> bool:
    """True if ``phone`` is a national mobile number.

    Formatting characters (spaces, dashes, brackets, a leading '+') are
    ignored.  With the default rules '0412 345 678' and '+61 412 345 678'
    pass while landlines and short numbers do not.
    """
    if not phone:
        return False
    rules = rules or ContactRules()
    return re.match(rules.mobile_pattern, digits_only(phone)) is not None


def to_e164(phone: str | None, rules: ContactRules | None = None) -> Optional[str]:
    """Format a national mobile number as E.164, or None if it isn't one."""
    rules = rules or ContactRules()
    if not is_valid_mobile(phone, rules):
        return None
    digits = digits_only(phone)
    if digits.startswith(rules.trunk_prefix) and not digits.startswith(rules.country_code):
        return f"+{rules.country_code}{digits[len(rules.trunk_prefix):]}"
    if digits.startswith(rules.country_code):
        return f"+{digits}"
    return None


def is_plausible_email(address: str | None) -> bool:
    return bool(address) and _EMAIL_RE.match(address.strip()) is not None


def reachable_email(client: Client | None) -> Optional[str]:
    """The client's email address, stripped, or None if it is blank."""
    if client is None or not client.email:
        return None
    address = client.email.strip()
    return address or None


def first_name(name: str | None, fallback: str = "there") -> str:
    """First word of a client name for greetings ('Jane Citizen' -> 'Jane')."""
    if not name or not name.strip():
        return fallback
    return name.strip().split()[0]
