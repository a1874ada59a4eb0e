"""Derived subscription state. Nothing here is ever stored."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from .models import CustomerStatus


EXPIRING_SOON_DAYS = 3


def days_left(end_date: date, today: date) -> int:
    return (_midnight(end_date) - _midnight(today)).days


def customer_status(end_date: date, today: date, *, expiring_within: int = EXPIRING_SOON_DAYS) -> CustomerStatus:
    remaining = days_left(end_date, today)
    if remaining < 0:
        return CustomerStatus.EXPIRED
    if remaining <= expiring_within:
        return CustomerStatus.EXPIRING_SOON
    return CustomerStatus.ACTIVE


def is_expired(end_date: date, today: date) -> bool:
    return days_left(end_date, today) < 0


def due_amount(price_per_month: Decimal, total_paid: Decimal) -> Decimal:
    return max(Decimal("0"), price_per_month - total_paid)


def to_date(value: object, tz: ZoneInfo, *, fallback: date) -> date:
    parsed = coerce_date(value, tz)
    return fallback if parsed is None else parsed


def to_datetime(value: object, tz: ZoneInfo) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=tz)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=tz)
    if isinstance(value, dict) and "seconds" in value:
        return to_datetime(value.get("seconds"), tz)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return to_datetime(int(text), tz)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=tz)
    if isinstance(value, (int, float)):
        timestamp = float(value)
        if timestamp > 10_000_000_000:
            timestamp = timestamp / 1000
        return datetime.fromtimestamp(timestamp, tz)
    if isinstance(value, list) and value:
        return to_datetime(value[0], tz)
    return None


def coerce_date(value: object, tz: ZoneInfo) -> date | None:
    if isinstance(value, datetime):
        return value.astimezone(tz).date() if value.tzinfo else value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if len(text) == 10 and not text.isdigit():
            try:
                return date.fromisoformat(text)
            except ValueError:
                return None
    parsed = to_datetime(value, tz)
    if parsed is None:
        return None
    return parsed.astimezone(tz).date()


def _midnight(value: date) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
