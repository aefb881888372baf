"""Canonical forms for the phone numbers and emails we send codes to.

Phones are Bangladeshi mobile numbers and always come out as ``+8801XXXXXXXXX``.
Emails keep their local part untouched and get a lower-cased domain.
"""
from __future__ import annotations

import re
from typing import Literal, Tuple

IdentifierType = Literal["phone", "email"]

PHONE = "phone"
EMAIL = "email"

COUNTRY_CODE = "+880"

_PHONE_SEPARATORS = re.compile(r"[\s\-().]")
_PHONE_SHAPE = re.compile(r"^(?:\+880|880|0)(1[3-9]\d{8})$")
_EMAIL_SHAPE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class IdentifierValidationError(ValueError):
    def __init__(self, message: str, identifier_type: IdentifierType | None = None):
        super().__init__(message)
        self.identifier_type = identifier_type


def detect_type(raw: str) -> IdentifierType:
    return EMAIL if "@" in (raw or "") else PHONE


def normalize_phone(raw: str) -> str:
    """Accepts ``01XXXXXXXXX``, ``8801XXXXXXXXX`` and ``+8801XXXXXXXXX``."""
    cleaned = _PHONE_SEPARATORS.sub("", raw or "")
    m = _PHONE_SHAPE.match(cleaned)
    if not m:
        raise IdentifierValidationError(
            "Please enter a valid Bangladesh phone number (01XXXXXXXXX)", PHONE
        )
    return COUNTRY_CODE + m.group(1)


def normalize_email(raw: str) -> str:
    value = (raw or "").strip()
    if not _EMAIL_SHAPE.match(value):
        raise IdentifierValidationError("Please enter a valid email address", EMAIL)
    local, _, domain = value.rpartition("@")
    return f"{local}@{domain.lower()}"


def normalize(raw: str) -> Tuple[str, IdentifierType]:
    """Return ``(identifier, identifier_type)``; idempotent for valid input."""
    if not raw or not raw.strip():
        raise IdentifierValidationError("Phone number or email is required")
    if detect_type(raw) == EMAIL:
        return normalize_email(raw), EMAIL
    return normalize_phone(raw), PHONE


def display_identifier(identifier: str) -> str:
    """Render a normalized identifier for the person it belongs to.

    Phones go back to local format (``01`` plus the last 9 digits), emails keep
    only the first character of the local part.
    """
    if not identifier:
        return ""
    if detect_type(identifier) == EMAIL:
        local, _, domain = identifier.rpartition("@")
        return f"{local[:1]}***@{domain}"
    digits = re.sub(r"\D", "", identifier)
    return "01" + digits[-9:]


def mask_identifier(identifier: str, visible_digits: int = 4) -> str:
    """Log-safe rendering; never reveals more than ``visible_digits`` of a phone."""
    if not identifier:
        return ""
    if detect_type(identifier) == EMAIL:
        return display_identifier(identifier)
    local = display_identifier(identifier)
    if len(local) <= visible_digits + 2:
        return local
    hidden = len(local) - visible_digits - 2
    return local[:2] + "*" * hidden + local[-visible_digits:]


__all__ = [
    "IdentifierType",
    "IdentifierValidationError",
    "PHONE",
    "EMAIL",
    "detect_type",
    "normalize",
    "normalize_phone",
    "normalize_email",
    "display_identifier",
    "mask_identifier",
]
