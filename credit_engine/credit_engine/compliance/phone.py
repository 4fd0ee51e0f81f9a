"""Phone number helpers shared by the gate, the dispatcher and log lines."""

from __future__ import annotations

import re

from credit_engine.errors import InvalidPhoneNumberError

_NON_DIGITS = re.compile(r"\D")

MIN_DIGITS = 10


def digits_only(phone_number: str) -> str:
    return _NON_DIGITS.sub("", phone_number or "")


def is_valid_phone(phone_number: str) -> bool:
    """At least ten digits once formatting characters are stripped."""
    return len(digits_only(phone_number)) >= MIN_DIGITS


def validate_phone(phone_number: str) -> str:
    """Return *phone_number* unchanged, or raise if it is too short.

    Raises
    ------
    InvalidPhoneNumberError
        If fewer than ten digits remain after stripping formatting.
    """
    if not is_valid_phone(phone_number):
        raise InvalidPhoneNumberError(phone_number)
    return phone_number


def normalize_phone(phone_number: str) -> str:
    """Canonical ``+<digits>`` form used as the lookup key for consent and opt-outs.

    Ten-digit numbers are assumed to be North American and get a ``+1``
    prefix.  Numbers that are too short to be valid are returned stripped
    but otherwise untouched so the caller can still report them.
    """
    digits = digits_only(phone_number)
    if len(digits) < MIN_DIGITS:
        return (phone_number or "").strip()
    if len(digits) == MIN_DIGITS:
        return f"+1{digits}"
    return f"+{digits}"


def mask_phone(phone_number: str | None) -> str:
    """Redact all but the last four digits for log output."""
    digits = digits_only(phone_number or "")
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"
