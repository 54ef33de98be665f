"""Phone number helpers."""
from __future__ import annotations

import re

_NON_PHONE_CHARS = re.compile(r"[^\d+]")
_NON_DIGITS = re.compile(r"\D")


def to_e164(phone: str | None) -> str | None:
    """Normalize to E.164; None when the number cannot be a dialable one."""
    if not phone:
        return None
    cleaned = _NON_PHONE_CHARS.sub("", phone)
    if cleaned.startswith("+"):
        digits = _NON_DIGITS.sub("", cleaned)
        return f"+{digits}" if len(digits) >= 10 else None
    if len(cleaned) == 10:
        return f"+1{cleaned}"
    if len(cleaned) == 11 and cleaned.startswith("1"):
        return f"+{cleaned}"
    return None


def digits_suffix(phone: str | None, length: int = 10) -> str:
    """Last `length` digits, used to match numbers stored in mixed formats."""
    digits = _NON_DIGITS.sub("", phone or "")
    return digits[-length:]


def mask_address(value: str | None) -> str:
    if not value:
        return ""
    v = str(value)
    return f"***{v[-4:]}" if len(v) > 4 else "***"

