from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal

from loguru import logger

from tiffindesk.config import RuntimeConfig
from tiffindesk.domain.ledger import LedgerEntry, build_payment, month_tag, monthly_totals, next_end_date
from tiffindesk.domain.models import Customer, PaymentRecord
from tiffindesk.domain.subscription import due_amount, is_expired
from tiffindesk.services.clock import Clock
from tiffindesk.services.repositories import TiffinRepository


class PaymentError(Exception):
    pass


@dataclass(slots=True, frozen=True)
class PaymentReceipt:
    payment: PaymentRecord
    customer: Customer
    previous_end_date: date


@dataclass(slots=True, frozen=True)
class FinanceSummary:
    month_tag: str
    expected: Decimal
    collected: Decimal
    outstanding: Decimal
    active_count: int
    orphan_count: int
    entries: list[LedgerEntry] = field(default_factory=list)

    @property
    def collection_rate(self) -> int:
        if self.expected <= 0:
            return 0
        return min(100, round(self.collected / self.expected * 100))


class PaymentLedger:
    def __init__(
        self,
        *,
        config: RuntimeConfig,
        repository: TiffinRepository,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._repository = repository
        self._clock = Clock(config.tz, now_provider)

    def record_payment(
        self,
        customer_id: str,
        *,
        amount: Decimal | None = None,
        method: str | None = None,
    ) -> PaymentReceipt:
        """Append a ledger entry and extend the customer's billing window.

        The two writes are one logical unit: if the customer update fails the
        ledger entry that was just appended is deleted again before
        ``PaymentError`` is raised.
        """
        customer = self._repository.get_customer(customer_id)
        if customer is None:
            raise PaymentError(f"customer not found: {customer_id}")

        paid_amount = customer.price_per_month if amount is None else amount
        if paid_amount <= 0:
            raise ValueError(f"payment amount must be positive: {paid_amount}")

        now = self._clock.now()
        new_end_date = next_end_date(customer.end_date, now.date(), cycle_days=self._config.billing.cycle_days)
        record = build_payment(
            customer,
            amount=paid_amount,
            method=method or self._config.billing.default_payment_method,
            paid_at=now,
        )

        try:
            payment_id = self._repository.add_payment(record)
        except Exception as exc:
            logger.exception("payment.record: ledger append failed, customer={}", customer_id)
            raise PaymentError(f"could not record payment for {customer.name}") from exc
        record = replace(record, payment_id=payment_id)

        updated = replace(
            customer,
            total_paid=customer.total_paid + paid_amount,
            end_date=new_end_date,
        )
        try:
            self._repository.update_customer(updated)
        except Exception as exc:
            logger.exception("payment.record: customer update failed, rolling back payment={}", payment_id)
            self._rollback_payment(payment_id)
            raise PaymentError(f"could not update balance for {customer.name}") from exc

        logger.info(
            "payment.record: customer={} amount={} {} method={} end_date={} -> {}",
            customer_id,
            paid_amount,
            self._config.billing.currency_label,
            record.method,
            customer.end_date.isoformat(),
            new_end_date.isoformat(),
        )
        return PaymentReceipt(payment=record, customer=updated, previous_end_date=customer.end_date)

    def finance_summary(self, month: str | None = None) -> FinanceSummary:
        today = self._clock.today()
        tag = month or month_tag(today)
        customers = self._repository.list_customers()
        active_customers = [customer for customer in customers if customer.is_active]

        expected = sum((customer.price_per_month for customer in active_customers), Decimal("0"))
        outstanding = sum(
            (due_amount(customer.price_per_month, customer.total_paid) for customer in active_customers),
            Decimal("0"),
        )
        active_count = sum(1 for customer in active_customers if not is_expired(customer.end_date, today))

        totals = monthly_totals(
            self._repository.list_payments(tag),
            tag,
            {customer.customer_id for customer in customers},
        )
        return FinanceSummary(
            month_tag=tag,
            expected=expected,
            collected=totals.collected,
            outstanding=outstanding,
            active_count=active_count,
            orphan_count=totals.orphan_count,
            entries=totals.entries,
        )

    def delete_transaction(self, payment_id: str) -> None:
        try:
            self._repository.delete_payment(payment_id)
        except Exception:
            logger.exception("payment.delete: failed, payment={}", payment_id)
            raise
        logger.info("payment.delete: payment={}", payment_id)

    def _rollback_payment(self, payment_id: str) -> None:
        try:
            self._repository.delete_payment(payment_id)
        except Exception:
            logger.exception("payment.rollback: could not delete payment={}, ledger and balance disagree", payment_id)
