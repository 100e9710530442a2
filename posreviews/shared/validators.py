"""Shared validation utilities"""

import re
from typing import NamedTuple, Optional

HIGH_CONFIDENCE = "high"
MEDIUM_CONFIDENCE = "medium"


class CanonicalPhone(NamedTuple):
    e164: str
    confidence: str

    @property
    def flagged(self) -> bool:
        return self.confidence != HIGH_CONFIDENCE


def canonicalize_phone(raw: Optional[str]) -> Optional[CanonicalPhone]:
    """
    Canonicalize a phone number from a POS payload to E.164.

    - "+" followed by 10-15 digits is kept as given (high confidence)
    - 10 digits is a US number without country code (high)
    - 11 digits starting with 1 is a US number with country code (high)
    - other 11-15 digit numbers are assumed to carry a country code (medium)

    Returns:
        CanonicalPhone, or None when the number cannot be canonicalized
    """
    if raw is None:
        return None

    raw = str(raw).strip()
    if not raw:
        return None

    has_plus = raw.startswith("+")
    digits = re.sub(r"\D", "", raw)

    if has_plus:
        if 10 <= len(digits) <= 15:
            return CanonicalPhone(f"+{digits}", HIGH_CONFIDENCE)
        return None

    if len(digits) == 10:
        return CanonicalPhone(f"+1{digits}", HIGH_CONFIDENCE)

    if len(digits) == 11 and digits.startswith("1"):
        return CanonicalPhone(f"+{digits}", HIGH_CONFIDENCE)

    if 11 <= len(digits) <= 15:
        return CanonicalPhone(f"+{digits}", MEDIUM_CONFIDENCE)

    return None


def validate_us_phone(phone: Optional[str]) -> Optional[str]:
    """
    Validate and normalize US phone number to E.164 format.

    Used for the integration test phone number.

    Raises:
        ValueError: If phone number is invalid
    """
    if not phone:
        return phone

    # Remove all non-digit characters
    digits = re.sub(r"\D", "", phone)

    # Handle +1 prefix
    if digits.startswith("1") and len(digits) == 11:
        digits = digits[1:]

    # US phone numbers should have 10 digits
    if len(digits) != 10:
        raise ValueError("Phone number must be 10 digits for US numbers")

    return f"+1{digits}"
