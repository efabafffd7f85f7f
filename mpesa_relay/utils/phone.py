"""Phone number helpers for the Daraja MSISDN format (254XXXXXXXXX)."""

from __future__ import annotations

import re

COUNTRY_CODE = "254"
TRUNK_PREFIX = "0"
MSISDN_LENGTH = 12

_SEPARATORS = re.compile(r"[\s\-+]")


def format_phone_number(phone: str) -> str:
    """Normalize a free-form Kenyan phone number to ``254XXXXXXXXX``."""
    cleaned = _SEPARATORS.sub("", phone)

    if cleaned.startswith(TRUNK_PREFIX):
        cleaned = COUNTRY_CODE + cleaned[len(TRUNK_PREFIX):]

    if not cleaned.startswith(COUNTRY_CODE):
        cleaned = COUNTRY_CODE + cleaned

    return cleaned


def is_valid_msisdn(formatted: str) -> bool:
    """Return True for exactly twelve digits carrying the country code."""
    return (
        len(formatted) == MSISDN_LENGTH
        and formatted.isdigit()
        and formatted.startswith(COUNTRY_CODE)
    )


__all__ = ["COUNTRY_CODE", "format_phone_number", "is_valid_msisdn"]
