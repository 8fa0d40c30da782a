"""
Utility functions for phone numbers and timestamps.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"

# Longest prefixes first so "+44" is not shadowed by "+4"
_COUNTRY_PREFIXES = (
    "+852", "+971", "+44", "+49", "+33", "+34", "+39", "+31",
    "+61", "+81", "+86", "+91", "+55", "+52", "+1", "+7",
)


def strip_channel_prefix(number: Optional[str]) -> Optional[str]:
    """
    Remove the provider's channel prefix ("whatsapp:+1555...") from an address.

    Returns None for empty input so callers can treat it as missing.
    """
    if not number:
        return None
    number = number.strip()
    if number.lower().startswith(WHATSAPP_PREFIX):
        number = number[len(WHATSAPP_PREFIX):]
    return number or None


def country_code_for(number: str) -> str:
    """Best-effort E.164 country code for an auto-provisioned channel."""
    for prefix in _COUNTRY_PREFIXES:
        if number.startswith(prefix):
            return prefix
    logger.debug(f"No known country prefix for {number}")
    return number[:2] if number.startswith("+") else ""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 UTC string with Z suffix."""
    value = ensure_utc(value)
    if value is None:
        return None
    return value.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
