from __future__ import annotations

from collections.abc import Collection, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal

from .models import Customer, PaymentRecord


BILLING_CYCLE_DAYS = 30


@dataclass(slots=True, frozen=True)
class LedgerEntry:
    record: PaymentRecord
    is_orphan: bool


@dataclass(slots=True, frozen=True)
class MonthlyTotals:
    month_tag: str
    collected: Decimal = Decimal("0")
    orphan_count: int = 0
    entries: list[LedgerEntry] = field(default_factory=list)


def next_end_date(current_end: date, today: date, *, cycle_days: int = BILLING_CYCLE_DAYS) -> date:
    # A lapsed plan restarts today; a running plan is extended from its end.
    cycle_start = today if today > current_end else current_end
    return cycle_start + timedelta(days=cycle_days)


def month_tag(target: date) -> str:
    return f"{target.year:04d}-{target.month:02d}"


def build_payment(
    customer: Customer,
    *,
    amount: Decimal,
    method: str,
    paid_at: datetime,
) -> PaymentRecord:
    return PaymentRecord(
        customer_id=customer.customer_id,
        customer_name=customer.name,
        amount=amount,
        paid_at=paid_at,
        method=method,
        month_tag=month_tag(paid_at.date()),
    )


def monthly_totals(
    payments: Iterable[PaymentRecord],
    tag: str,
    known_customer_ids: Collection[str],
) -> MonthlyTotals:
    collected = Decimal("0")
    orphan_count = 0
    entries: list[LedgerEntry] = []
    for record in payments:
        if record.month_tag != tag:
            continue
        is_orphan = record.customer_id not in known_customer_ids
        if is_orphan:
            orphan_count += 1
        else:
            collected += record.amount
        entries.append(LedgerEntry(record=record, is_orphan=is_orphan))

    entries.sort(key=lambda entry: entry.record.paid_at, reverse=True)
    return MonthlyTotals(month_tag=tag, collected=collected, orphan_count=orphan_count, entries=entries)
