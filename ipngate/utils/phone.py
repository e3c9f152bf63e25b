"""
Phone number normalization - E.164 format using the phonenumbers library.

Mobile-money providers send MSISDNs in several shapes:
- 254712345678   (country code, no plus - M-Pesa C2B / STK)
- 0712345678     (national format - bank portals)
- +254 712 345 678
- a 64-char SHA-256 hex digest (Safaricom masks MSISDN in C2B since 2021)
"""
import logging
import re
from typing import Optional

import phonenumbers

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")
_HASHED_MSISDN = re.compile(r"^[0-9a-fA-F]{64}$")


def normalize_phone_e164(phone, default_region: str = "KE") -> Optional[str]:
    """
    Normalize a phone number to E.164.

    - 0712345678       -> +254712345678
    - 254712345678     -> +254712345678
    - +254 712 345 678 -> +254712345678

    Returns None if the number is missing, hashed, or not a possible number.
    """
    if phone is None:
        return None
    cleaned = str(phone).strip()
    if not cleaned or is_hashed_msisdn(cleaned):
        return None

    digits = _NON_DIGITS.sub("", cleaned)
    if not digits:
        return None

    candidates = [cleaned]
    if not cleaned.startswith("+"):
        candidates.append(f"+{digits}")

    for candidate in candidates:
        try:
            parsed = phonenumbers.parse(candidate, default_region)
        except phonenumbers.NumberParseException:
            continue
        if phonenumbers.is_valid_number(parsed) or phonenumbers.is_possible_number(parsed):
            return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)

    return None


def is_hashed_msisdn(value) -> bool:
    """True for the SHA-256 masked MSISDN Safaricom sends in C2B confirmations."""
    return bool(value) and bool(_HASHED_MSISDN.match(str(value).strip()))
