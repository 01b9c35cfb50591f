from __future__ import annotations

import re
from typing import Optional

_REPLY_TARGET = re.compile(r"^\s*(\+?[0-9]{10,15})(?:\s+(.+))?", re.DOTALL)


def normalize_phone(value: Optional[str]) -> str:
    """Digits only, with the North American country code dropped from 11-digit numbers."""
    if not value:
        return ""
    digits = re.sub(r"\D", "", value)
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:]
    return digits


def same_contact(left: Optional[str], right: Optional[str]) -> bool:
    normalized = normalize_phone(left)
    return bool(normalized) and normalized == normalize_phone(right)


def to_e164(phone: str) -> str:
    value = phone.strip()
    if value.startswith("+"):
        return value
    digits = re.sub(r"\D", "", value)
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def display_phone(phone: str) -> str:
    value = phone.strip()
    if value.startswith("+1"):
        return value[2:]
    return value


def split_reply_target(body: str) -> tuple[Optional[str], str]:
    match = _REPLY_TARGET.match(body or "")
    if not match:
        return None, body or ""
    return match.group(1), (match.group(2) or "").strip()
