from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str | None) -> str:
    """
    E.164-style ``+<digits>``; a leading ``00`` international prefix is dropped.

    Returns "" when no digits remain.
    """
    if not raw:
        return ""
    phone = raw.strip()
    if phone.startswith("+"):
        digits = _NON_DIGITS.sub("", phone[1:])
    else:
        digits = _NON_DIGITS.sub("", phone)
        if digits.startswith("00"):
            digits = digits[2:]
    return f"+{digits}" if digits else ""


def provider_recipient(phone: str) -> str:
    """The Cloud API expects recipients without the leading '+'."""
    return phone[1:] if phone.startswith("+") else phone
