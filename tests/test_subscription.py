from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
import sys
from zoneinfo import ZoneInfo

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from tiffindesk.domain.models import CustomerStatus
from tiffindesk.domain.subscription import (
    coerce_date,
    customer_status,
    days_left,
    due_amount,
    is_expired,
    to_date,
    to_datetime,
)


TZ = ZoneInfo("Asia/Dubai")
TODAY = date(2026, 10, 19)


@pytest.mark.parametrize(
    ("offset", "expected"),
    [
        (-30, CustomerStatus.EXPIRED),
        (-1, CustomerStatus.EXPIRED),
        (0, CustomerStatus.EXPIRING_SOON),
        (1, CustomerStatus.EXPIRING_SOON),
        (3, CustomerStatus.EXPIRING_SOON),
        (4, CustomerStatus.ACTIVE),
        (40, CustomerStatus.ACTIVE),
    ],
)
def test_status_follows_days_left(offset: int, expected: CustomerStatus) -> None:
    end_date = TODAY + timedelta(days=offset)

    assert days_left(end_date, TODAY) == offset
    assert customer_status(end_date, TODAY) == expected
    assert is_expired(end_date, TODAY) == (offset < 0)


def test_status_respects_custom_window() -> None:
    assert customer_status(TODAY + timedelta(days=5), TODAY, expiring_within=7) == CustomerStatus.EXPIRING_SOON


def test_due_amount_is_never_negative() -> None:
    price = Decimal("900")

    assert due_amount(price, Decimal("0")) == Decimal("900")
    assert due_amount(price, Decimal("300")) == Decimal("600")
    assert due_amount(price, price) == Decimal("0")
    assert due_amount(price, price + 100) == Decimal("0")


def test_due_amount_non_increasing_in_paid() -> None:
    price = Decimal("2500")
    previous = due_amount(price, Decimal("0"))
    for paid in range(0, 3001, 250):
        current = due_amount(price, Decimal(paid))
        assert Decimal("0") <= current <= previous
        previous = current


def test_to_date_falls_back_when_missing() -> None:
    assert to_date(None, TZ, fallback=TODAY) == TODAY
    assert to_date("not a date", TZ, fallback=TODAY) == TODAY


def test_to_date_accepts_store_timestamps() -> None:
    assert to_date("2026-11-15", TZ, fallback=TODAY) == date(2026, 11, 15)
    assert to_date({"seconds": 1756684800}, TZ, fallback=TODAY) == date(2025, 9, 1)
    assert to_date(1756684800000, TZ, fallback=TODAY) == date(2025, 9, 1)
    assert to_date("1756684800000", TZ, fallback=TODAY) == date(2025, 9, 1)


def test_to_date_uses_business_timezone() -> None:
    late_utc = datetime(2026, 10, 18, 22, 30, tzinfo=timezone.utc)

    assert to_date(late_utc, TZ, fallback=TODAY) == date(2026, 10, 19)


def test_to_datetime_attaches_timezone_to_naive_values() -> None:
    parsed = to_datetime("2026-10-19T08:15:00", TZ)

    assert parsed == datetime(2026, 10, 19, 8, 15, tzinfo=TZ)


def test_coerce_date_rejects_garbage() -> None:
    assert coerce_date("", TZ) is None
    assert coerce_date(True, TZ) is None
    assert coerce_date({"nanos": 1}, TZ) is None
