from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import date

from .attendance import AttendanceResolver
from .calendar import dates_for_week
from .models import DAYS, AttendanceOverride, Customer, DayName, Meal, MealCounts
from .subscription import is_expired


class ProductionForecaster:
    def __init__(self, resolver: AttendanceResolver | None = None) -> None:
        self._resolver = resolver or AttendanceResolver()

    def eligible_customers(self, customers: Iterable[Customer], target_date: date) -> list[Customer]:
        return [
            customer
            for customer in customers
            if customer.is_active and not is_expired(customer.end_date, target_date)
        ]

    def count_for_day(
        self,
        customers: Iterable[Customer],
        overrides_for_date: Mapping[str, AttendanceOverride],
        target_date: date,
    ) -> MealCounts:
        lunch = 0
        dinner = 0
        for customer in self.eligible_customers(customers, target_date):
            override = overrides_for_date.get(customer.customer_id)
            if self._resolver.is_attending(customer, Meal.LUNCH, override):
                lunch += 1
            if self._resolver.is_attending(customer, Meal.DINNER, override):
                dinner += 1
        return MealCounts(lunch=lunch, dinner=dinner)

    def forecast_week(
        self,
        customers: Iterable[Customer],
        overrides_by_date: Mapping[date, Mapping[str, AttendanceOverride]],
        week_id: str,
    ) -> dict[DayName, MealCounts]:
        customer_list = list(customers)
        forecast: dict[DayName, MealCounts] = {}
        for day, target_date in zip(DAYS, dates_for_week(week_id)):
            forecast[day] = self.count_for_day(customer_list, overrides_by_date.get(target_date, {}), target_date)
        return forecast

    def roster(
        self,
        customers: Iterable[Customer],
        overrides_for_date: Mapping[str, AttendanceOverride],
        target_date: date,
        meal: Meal,
    ) -> list[Customer]:
        return [
            customer
            for customer in self.eligible_customers(customers, target_date)
            if self._resolver.is_attending(customer, meal, overrides_for_date.get(customer.customer_id))
        ]
