import re
from datetime import date
from typing import Optional, Union

VPA_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+@[a-zA-Z0-9]+$")


def digits_only(value: str) -> str:
    return re.sub(r"[^0-9]", "", value or "")


def is_valid_vpa(vpa: Optional[str]) -> bool:
    if not vpa:
        return False
    return VPA_PATTERN.match(vpa) is not None


def luhn_check(number: Optional[str]) -> bool:
    digits = digits_only(number)
    if len(digits) < 13 or len(digits) > 19:
        return False

    total = 0
    double = False
    for ch in reversed(digits):
        d = int(ch)
        if double:
            d *= 2
            if d > 9:
                d -= 9
        total += d
        double = not double
    return total % 10 == 0


def detect_card_network(number: Optional[str]) -> str:
    digits = digits_only(number)
    if digits.startswith("4"):
        return "visa"
    first_two = digits[:2]
    if first_two in ("51", "52", "53", "54", "55"):
        return "mastercard"
    if first_two in ("34", "37"):
        return "amex"
    if first_two in ("60", "65"):
        return "rupay"
    if len(first_two) == 2 and 81 <= int(first_two) <= 89:
        return "rupay"
    return "unknown"


def validate_expiry(month: Union[str, int], year: Union[str, int], today: Optional[date] = None) -> bool:
    try:
        month = int(month)
        year = int(year)
    except (TypeError, ValueError):
        return False
    if month < 1 or month > 12 or year <= 0:
        return False
    if year < 100:
        year += 2000

    today = today or date.today()
    return (year, month) >= (today.year, today.month)
