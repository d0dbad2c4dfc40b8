"""Phone helpers: WhatsApp numbers are stored as digits only, E.164 without '+'."""

import re

NON_DIGITS = re.compile(r"\D")
VALID_PHONE = re.compile(r"^\d{10,15}$")


def normalize_phone(phone: str | int | None, country_code: str = "52") -> str:
    """Strip everything but digits; bare 10-digit national numbers get the country code."""
    digits = NON_DIGITS.sub("", str(phone or ""))
    if len(digits) == 10:
        digits = country_code + digits
    return digits


def is_valid_phone(phone: str | None) -> bool:
    return bool(VALID_PHONE.match(NON_DIGITS.sub("", phone or "")))
