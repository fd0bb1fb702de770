import re

_NON_DIALABLE = re.compile(r"[^\d+]")


def normalize_phone_number(phone_number: str) -> str:
    """
    Strip formatting from a phone number and make sure it carries a leading +.
    "(555) 123-4567" with a country code typed in becomes "+15551234567".
    """
    normalized = _NON_DIALABLE.sub("", phone_number.strip())
    # A + is only meaningful in front
    normalized = normalized[:1] + normalized[1:].replace("+", "")
    if not normalized.startswith("+"):
        normalized = "+" + normalized
    return normalized


def mask_phone_number(phone_number: str) -> str:
    """Keep only the last four digits for log lines"""
    if len(phone_number) <= 4:
        return "****"
    return "*" * (len(phone_number) - 4) + phone_number[-4:]
