from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
import sys
import unittest
from unittest.mock import Mock
from zoneinfo import ZoneInfo

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from tiffindesk.config import RuntimeConfig
from tiffindesk.domain.models import AttendanceOverride, CustomerStatus, DayName, Meal, MealCounts
from tiffindesk.services.kitchen import AttendanceError, KitchenService
from tiffindesk.services.repositories import ATTENDANCE, InMemoryRepository, RepositoryError


TZ = ZoneInfo("Asia/Dubai")
NOW = datetime(2026, 2, 18, 7, 30, tzinfo=TZ)
TODAY = NOW.date()


def seed_documents() -> dict:
    return {
        "customers": {
            "c1": {"name": "Aisha", "mealsPerDay": {"lunch": True, "dinner": True}, "pricePerMonth": 900, "totalPaid": 900, "endDate": "2026-03-10"},
            "c2": {"name": "Ravi", "mealsPerDay": {"lunch": True, "dinner": False}, "pricePerMonth": 600, "totalPaid": 0, "endDate": "2026-02-20"},
            "c3": {"name": "Sara", "mealsPerDay": {"dinner": True}, "pricePerMonth": 700, "totalPaid": 0, "endDate": "2026-02-17"},
            "c4": {"name": "Omar", "pricePerMonth": 800, "endDate": "2026-03-31", "isActive": False},
        },
        "attendance": {
            "2026-02-18_c1": {"customerId": "c1", "date": "2026-02-18", "lunch": False, "dinner": True},
            "2026-02-18_gone": {"customerId": "gone", "date": "2026-02-18", "lunch": False},
        },
        "menu": {"2026-02-18": {"lunch": {"main": "Rajma", "side": "Salad"}}},
    }


def build_service(repository: InMemoryRepository | None = None) -> tuple[KitchenService, InMemoryRepository]:
    repository = repository or InMemoryRepository(timezone=TZ, documents=seed_documents(), now_provider=lambda: NOW)
    return KitchenService(config=RuntimeConfig(), repository=repository, now_provider=lambda: NOW), repository


class _BrokenAttendanceWrites(InMemoryRepository):
    def save_override(self, override: AttendanceOverride) -> None:
        raise RepositoryError("attendance write rejected")


class KitchenServiceTest(unittest.TestCase):
    def test_dashboard(self) -> None:
        service, _ = build_service()

        summary = service.dashboard()

        self.assertEqual(summary.target_date, TODAY)
        self.assertEqual(summary.active_count, 2)
        self.assertEqual(summary.payments_due, 1)
        self.assertEqual(summary.counts, MealCounts(lunch=1, dinner=1))
        self.assertEqual(summary.menu.lunch.main, "Rajma")
        self.assertEqual(summary.menu.lunch.extra, "Salad")
        self.assertEqual([override.customer_id for override in summary.orphan_overrides], ["gone"])

    def test_week_forecast(self) -> None:
        service, _ = build_service()

        forecast = service.week_forecast("2026-W08")

        self.assertEqual(forecast[DayName.MONDAY], MealCounts(lunch=2, dinner=2))
        self.assertEqual(forecast[DayName.WEDNESDAY], MealCounts(lunch=1, dinner=1))
        self.assertEqual(forecast[DayName.SATURDAY], MealCounts(lunch=1, dinner=1))

    def test_roster(self) -> None:
        service, _ = build_service()

        self.assertEqual([customer.name for customer in service.roster(Meal.LUNCH)], ["Ravi"])
        self.assertEqual([customer.name for customer in service.roster(Meal.DINNER, date(2026, 2, 16))], ["Aisha", "Sara"])

    def test_customers_listing(self) -> None:
        service, _ = build_service()

        snapshots = service.customers()

        self.assertEqual([item.customer.name for item in snapshots], ["Sara", "Ravi", "Aisha"])
        self.assertEqual(snapshots[0].status, CustomerStatus.EXPIRED)
        self.assertEqual(snapshots[1].status, CustomerStatus.EXPIRING_SOON)
        self.assertEqual(snapshots[1].due, Decimal("600"))
        self.assertEqual(len(service.customers(include_inactive=True)), 4)

    def test_toggle_attendance_round_trip(self) -> None:
        service, repository = build_service()
        listener = Mock()
        repository.subscribe(listener)

        first = service.toggle_attendance("c2", Meal.LUNCH)
        self.assertEqual(service.today_counts(), MealCounts(lunch=0, dinner=1))
        second = service.toggle_attendance("c2", Meal.LUNCH)

        self.assertFalse(first.lunch)
        self.assertTrue(second.lunch)
        self.assertEqual(service.today_counts(), MealCounts(lunch=1, dinner=1))
        self.assertIn("2026-02-18_c2", repository.documents(ATTENDANCE))
        self.assertEqual(listener.call_count, 2)

    def test_toggle_attendance_failure_propagates(self) -> None:
        repository = _BrokenAttendanceWrites(timezone=TZ, documents=seed_documents(), now_provider=lambda: NOW)
        service, _ = build_service(repository)

        with self.assertRaises(RepositoryError):
            service.toggle_attendance("c1", Meal.DINNER)

    def test_orphan_overrides(self) -> None:
        service, _ = build_service()

        orphans = service.orphan_overrides()

        self.assertEqual([override.customer_id for override in orphans], ["gone"])

    def test_toggle_attendance_unknown_customer_is_rejected(self) -> None:
        service, repository = build_service()
        before = repository.documents(ATTENDANCE)

        with self.assertRaises(AttendanceError):
            service.toggle_attendance("ghost", Meal.LUNCH)

        self.assertEqual(repository.documents(ATTENDANCE), before)
