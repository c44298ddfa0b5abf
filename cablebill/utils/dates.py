from datetime import date, datetime, time, timedelta, timezone

from dateutil.relativedelta import relativedelta


def utcnow() -> datetime:
    """Naive UTC; every stored timestamp goes through here."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value) -> datetime | None:
    """Accept date, datetime (naive = UTC) or ISO string."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    raise TypeError(f"Unsupported date value: {value!r}")


def add_days(dt: datetime, days: float) -> datetime:
    return dt + timedelta(days=days)


def add_months(dt: datetime, months: int) -> datetime:
    # relativedelta clamps to month end (Jan 31 + 1 month -> Feb 28/29)
    return dt + relativedelta(months=int(months))


def year_month(dt: datetime) -> str:
    return f"{dt.year}{dt.month:02d}"
