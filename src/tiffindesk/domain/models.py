from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum


class Meal(StrEnum):
    LUNCH = "lunch"
    DINNER = "dinner"


class DayName(StrEnum):
    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"
    SUNDAY = "Sunday"


DAYS: tuple[DayName, ...] = tuple(DayName)


class CustomerStatus(StrEnum):
    ACTIVE = "active"
    EXPIRING_SOON = "expiring-soon"
    EXPIRED = "expired"


@dataclass(slots=True, frozen=True)
class MealPlan:
    # None means the flag was never stored; only an explicit False opts out.
    lunch: bool | None = None
    dinner: bool | None = None

    def flag(self, meal: Meal) -> bool | None:
        return self.lunch if meal == Meal.LUNCH else self.dinner


@dataclass(slots=True)
class Customer:
    customer_id: str
    name: str
    end_date: date
    price_per_month: Decimal = Decimal("0")
    total_paid: Decimal = Decimal("0")
    start_date: date | None = None
    meals: MealPlan = field(default_factory=MealPlan)
    contact: str = ""
    notes: str = ""
    is_active: bool = True


@dataclass(slots=True, frozen=True)
class AttendanceOverride:
    target_date: date
    customer_id: str
    lunch: bool | None = None
    dinner: bool | None = None
    updated_at: datetime | None = None

    def flag(self, meal: Meal) -> bool | None:
        return self.lunch if meal == Meal.LUNCH else self.dinner

    @property
    def document_id(self) -> str:
        return f"{self.target_date.isoformat()}_{self.customer_id}"


@dataclass(slots=True)
class RiceSlot:
    enabled: bool = False
    type: str = ""


@dataclass(slots=True)
class MealSlot:
    main: str = ""
    roti: bool = True
    rice: RiceSlot = field(default_factory=RiceSlot)
    extra: str = ""


@dataclass(slots=True)
class DayMenu:
    lunch: MealSlot = field(default_factory=MealSlot)
    dinner: MealSlot = field(default_factory=MealSlot)

    def slot(self, meal: Meal) -> MealSlot:
        return self.lunch if meal == Meal.LUNCH else self.dinner


@dataclass(slots=True, frozen=True)
class PaymentRecord:
    customer_id: str
    customer_name: str
    amount: Decimal
    paid_at: datetime
    method: str
    month_tag: str
    payment_id: str | None = None


@dataclass(slots=True, frozen=True)
class MealCounts:
    lunch: int = 0
    dinner: int = 0

    @property
    def total(self) -> int:
        return self.lunch + self.dinner

    def count(self, meal: Meal) -> int:
        return self.lunch if meal == Meal.LUNCH else self.dinner
