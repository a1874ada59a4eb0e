from __future__ import annotations

from datetime import date, datetime

from .models import AttendanceOverride, Customer, Meal


def is_subscribed(customer: Customer, meal: Meal) -> bool:
    return customer.meals.flag(meal) is not False


class AttendanceResolver:
    """Plan-level opt-in, day-level opt-out.

    A meal the customer is not subscribed to is never counted, whatever a
    stray override says. A subscribed meal is counted unless the override
    for that date carries an explicit ``False``.
    """

    def is_attending(self, customer: Customer, meal: Meal, override: AttendanceOverride | None) -> bool:
        if not is_subscribed(customer, meal):
            return False
        if override is None:
            return True
        return override.flag(meal) is not False

    def selection(self, customer: Customer, override: AttendanceOverride | None) -> set[Meal]:
        return {meal for meal in Meal if self.is_attending(customer, meal, override)}


def toggled_override(
    *,
    customer_id: str,
    target_date: date,
    meal: Meal,
    current: AttendanceOverride | None,
    now: datetime,
) -> AttendanceOverride:
    lunch = True if current is None or current.lunch is None else current.lunch
    dinner = True if current is None or current.dinner is None else current.dinner
    if meal == Meal.LUNCH:
        lunch = not lunch
    else:
        dinner = not dinner
    return AttendanceOverride(
        target_date=target_date,
        customer_id=customer_id,
        lunch=lunch,
        dinner=dinner,
        updated_at=now,
    )
