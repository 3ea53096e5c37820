"""Input normalization and validation for checkout requests."""

import re
from datetime import datetime

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)


def sanitize_string(value: object, max_len: int = 240) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text[:max_len]


def only_digits(value: object) -> str:
    return re.sub(r"\D+", "", str(value if value is not None else ""))


def is_uuid(value: str | None) -> bool:
    return bool(value) and UUID_RE.match(value) is not None


def is_valid_email(value: str | None) -> bool:
    if not value or len(value) > 180:
        return False
    return EMAIL_RE.match(value) is not None


def is_valid_phone(value: str | None) -> bool:
    return 10 <= len(only_digits(value)) <= 13


def luhn_check(card_number: str) -> bool:
    if not card_number.isdigit():
        return False
    total = 0
    for position, char in enumerate(reversed(card_number)):
        digit = int(char)
        if position % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def is_valid_card_number(card_number: str) -> bool:
    return 13 <= len(card_number) <= 19 and luhn_check(card_number)


def normalize_month(value: object) -> str | None:
    digits = only_digits(value)
    if not digits:
        return None
    month = int(digits)
    if month < 1 or month > 12:
        return None
    return f"{month:02d}"


def normalize_year(value: object) -> str | None:
    digits = only_digits(value)
    if len(digits) == 2:
        return str(int(digits) + 2000)
    if len(digits) == 4:
        return digits
    return None


def is_card_expired(month: str, year: str, now: datetime) -> bool:
    """Whole-month comparison: a card expiring this month is still valid."""

    return (int(year), int(month)) < (now.year, now.month)


def parse_installments(value: object) -> int:
    try:
        parsed = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 1
    return min(12, max(1, parsed))
