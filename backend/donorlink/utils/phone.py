from __future__ import annotations

import re
from typing import Iterable, Set

from loguru import logger

MATCH_DIGITS = 10


def normalize_phone_number(phone: str) -> str:
    """
    Normalize phone number to E.164 format for Twilio.

    Examples:
        "+1-555-0199" -> "+15550199"
        "+1 (555) 123-4567" -> "+15551234567"
    """
    if not phone:
        return phone
    normalized = "+" + re.sub(r"\D", "", phone)
    logger.debug("Normalized phone number: {} -> {}", phone, normalized)
    return normalized


def match_key(phone: str | None) -> str | None:
    """Last ten digits of a phone number, or None when it has fewer than ten."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if len(digits) < MATCH_DIGITS:
        return None
    return digits[-MATCH_DIGITS:]


def match_keys(phones: Iterable[str]) -> Set[str]:
    keys = set()
    for phone in phones:
        key = match_key(phone)
        if key:
            keys.add(key)
    return keys
