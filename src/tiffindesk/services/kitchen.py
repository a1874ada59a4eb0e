from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from loguru import logger

from tiffindesk.config import RuntimeConfig
from tiffindesk.domain.attendance import toggled_override
from tiffindesk.domain.calendar import dates_for_week, week_id
from tiffindesk.domain.forecast import ProductionForecaster
from tiffindesk.domain.models import (
    AttendanceOverride,
    Customer,
    CustomerStatus,
    DayMenu,
    DayName,
    Meal,
    MealCounts,
)
from tiffindesk.domain.subscription import customer_status, days_left, due_amount
from tiffindesk.services.clock import Clock
from tiffindesk.services.repositories import TiffinRepository


@dataclass(slots=True, frozen=True)
class DashboardSummary:
    target_date: date
    active_count: int
    payments_due: int
    counts: MealCounts
    menu: DayMenu
    orphan_overrides: tuple[AttendanceOverride, ...] = ()


class AttendanceError(Exception):
    pass


@dataclass(slots=True, frozen=True)
class CustomerSnapshot:
    customer: Customer
    status: CustomerStatus
    days_left: int
    due: Decimal


class KitchenService:
    """Daily production numbers and attendance toggles, recomputed on every call."""

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
        self._forecaster = ProductionForecaster()

    def today_counts(self, target_date: date | None = None) -> MealCounts:
        target = target_date or self._clock.today()
        customers = self._repository.list_customers()
        overrides = self._repository.list_overrides([target]).get(target, {})
        return self._forecaster.count_for_day(customers, overrides, target)

    def dashboard(self, target_date: date | None = None) -> DashboardSummary:
        target = target_date or self._clock.today()
        customers = self._repository.list_customers()
        overrides = self._repository.list_overrides([target]).get(target, {})
        eligible = self._forecaster.eligible_customers(customers, target)
        payments_due = sum(1 for customer in eligible if due_amount(customer.price_per_month, customer.total_paid) > 0)
        return DashboardSummary(
            target_date=target,
            active_count=len(eligible),
            payments_due=payments_due,
            counts=self._forecaster.count_for_day(customers, overrides, target),
            menu=self._repository.get_day_menu(target) or DayMenu(),
            orphan_overrides=tuple(_dangling(customers, overrides)),
        )

    def week_forecast(self, target_week: str | None = None) -> dict[DayName, MealCounts]:
        resolved_week = target_week or week_id(self._clock.today())
        dates = dates_for_week(resolved_week)
        customers = self._repository.list_customers()
        overrides = self._repository.list_overrides(dates)
        return self._forecaster.forecast_week(customers, overrides, resolved_week)

    def roster(self, meal: Meal, target_date: date | None = None) -> list[Customer]:
        target = target_date or self._clock.today()
        customers = self._repository.list_customers()
        overrides = self._repository.list_overrides([target]).get(target, {})
        return self._forecaster.roster(customers, overrides, target, meal)

    def customers(self, *, include_inactive: bool = False, target_date: date | None = None) -> list[CustomerSnapshot]:
        target = target_date or self._clock.today()
        snapshots = []
        for customer in self._repository.list_customers():
            if not include_inactive and not customer.is_active:
                continue
            snapshots.append(
                CustomerSnapshot(
                    customer=customer,
                    status=customer_status(
                        customer.end_date,
                        target,
                        expiring_within=self._config.billing.expiring_soon_days,
                    ),
                    days_left=days_left(customer.end_date, target),
                    due=due_amount(customer.price_per_month, customer.total_paid),
                )
            )
        snapshots.sort(key=lambda item: (item.days_left, item.customer.name))
        return snapshots

    def toggle_attendance(self, customer_id: str, meal: Meal, target_date: date | None = None) -> AttendanceOverride:
        target = target_date or self._clock.today()
        if self._repository.get_customer(customer_id) is None:
            raise AttendanceError(f"customer not found: {customer_id}")
        current = self._repository.list_overrides([target]).get(target, {}).get(customer_id)
        override = toggled_override(
            customer_id=customer_id,
            target_date=target,
            meal=meal,
            current=current,
            now=self._clock.now(),
        )
        try:
            self._repository.save_override(override)
        except Exception:
            logger.exception(
                "attendance.toggle: save failed, customer={} date={} meal={}",
                customer_id,
                target.isoformat(),
                meal.value,
            )
            raise
        logger.info(
            "attendance.toggle: customer={} date={} lunch={} dinner={}",
            customer_id,
            target.isoformat(),
            override.lunch,
            override.dinner,
        )
        return override

    def orphan_overrides(self, target_date: date | None = None) -> list[AttendanceOverride]:
        target = target_date or self._clock.today()
        overrides = self._repository.list_overrides([target]).get(target, {})
        return _dangling(self._repository.list_customers(), overrides)


def _dangling(customers: list[Customer], overrides: dict[str, AttendanceOverride]) -> list[AttendanceOverride]:
    known = {customer.customer_id for customer in customers}
    return [override for customer_id, override in overrides.items() if customer_id not in known]
