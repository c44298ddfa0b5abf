import math
import re

# Simple, pragmatic patterns
_DIGITS_RE = re.compile(r"\d")

def clean_str(val: str | None, max_len: int = 255) -> str | None:
    """
    Collapse whitespace, trim, enforce max length. Returns None if empty after cleaning.
    """
    if val is None:
        return None
    s = re.sub(r"\s+", " ", str(val)).strip()
    if not s:
        return None
    return s[:max_len]

def normalize_mobile(val: str | None) -> str | None:
    """
    Normalize a subscriber mobile to 10 digits. Accepts a leading 0 or 91 country code.
    Returns None if invalid or empty.
    """
    if not val:
        return None
    digits = "".join(_DIGITS_RE.findall(str(val)))
    if len(digits) == 12 and digits.startswith("91"):
        digits = digits[2:]
    elif len(digits) == 11 and digits.startswith("0"):
        digits = digits[1:]
    if len(digits) != 10:
        return None
    return digits

def parse_amount(val) -> float | None:
    """
    Coerce a request amount to float. Returns None for missing, non-numeric,
    NaN or infinite input; sign is left to the caller.
    """
    if val is None or isinstance(val, bool):
        return None
    try:
        amount = float(val)
    except (TypeError, ValueError):
        return None
    if math.isnan(amount) or math.isinf(amount):
        return None
    return amount
