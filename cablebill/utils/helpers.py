from datetime import datetime
from typing import Any, Optional

# Minor units (paise) used when comparing or displaying money
MONEY_PLACES = 2


def safe_float(value: Any, default: float = 0.0) -> float:
    """Nullable numeric column -> float; None and junk become `default`."""
    if value is None:
        return float(default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def round_currency(value: Any) -> float:
    # Display only; stored amounts keep full precision
    return round(safe_float(value), MONEY_PLACES)


def money_equal(a: Any, b: Any) -> bool:
    return round(safe_float(a) - safe_float(b), MONEY_PLACES) == 0


def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None
