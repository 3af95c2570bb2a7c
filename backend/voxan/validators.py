"""Contact validation and phone normalization."""

from __future__ import annotations

import re
from typing import Optional

from .errors import ValidationError


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to its canonical lead key.

    Strips spacing and punctuation, converts a leading "00" international
    prefix to "+", and rewrites UK national numbers ("07...") to +44.
    Anything else is returned digits-only with its "+" preserved.
    """
    if not phone:
        return phone
    raw = phone.strip()
    digits = re.sub(r"\D", "", raw)
    if not digits:
        return None
    if raw.startswith("+"):
        return f"+{digits}"
    if digits.startswith("00"):
        return f"+{digits[2:]}"
    if digits.startswith("0") and len(digits) == 11:
        return f"+44{digits[1:]}"
    return digits


def validate_phone(phone: Optional[str], pattern: str) -> str:
    if not phone or not re.match(pattern, phone):
        raise ValidationError(
            "Please provide a valid UK phone number starting with +44"
        )
    return phone


def validate_email(email: Optional[str], pattern: str) -> str:
    if not email or not re.match(pattern, email.strip()):
        raise ValidationError("Please provide a valid email address")
    return email.strip()
