import re
from typing import Optional

WHATSAPP_PREFIX = "whatsapp:"


def strip_channel_prefix(address: str) -> str:
    """'whatsapp:+39...' -> '+39...'"""
    if address and address.lower().startswith(WHATSAPP_PREFIX):
        return address[len(WHATSAPP_PREFIX):]
    return address or ""


def format_e164(phone: Optional[str]) -> str:
    """
    Keep digits and '+', make sure the number starts with '+'.

    '00' international prefixes become '+'.
    """
    if not phone:
        return ""
    cleaned = re.sub(r"[^\d+]", "", strip_channel_prefix(phone))
    cleaned = "+" + cleaned.replace("+", "") if cleaned else ""
    if cleaned.startswith("+00"):
        cleaned = "+" + cleaned[3:]
    return cleaned if len(cleaned) > 1 else ""


def digits_only(phone: Optional[str]) -> str:
    return re.sub(r"\D", "", phone or "")


def last_digits(phone: Optional[str], count: int = 10) -> str:
    return digits_only(phone)[-count:]


def looks_like_mobile(phone: Optional[str]) -> bool:
    """Heuristic used when no lookup is possible: 10 or more digits."""
    return len(digits_only(phone)) >= 10
