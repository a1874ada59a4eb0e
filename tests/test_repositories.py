from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
import json
from pathlib import Path
import sys
import tempfile
import unittest
from unittest.mock import Mock
from zoneinfo import ZoneInfo

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from tiffindesk.domain.models import AttendanceOverride, Customer, DayMenu, MealPlan, MealSlot, PaymentRecord
from tiffindesk.services.repositories import (
    ATTENDANCE,
    CUSTOMERS,
    MENU,
    InMemoryRepository,
    RepositoryError,
    customer_from_document,
    decimal_to_number,
    to_optional_bool,
)


TZ = ZoneInfo("Asia/Dubai")
NOW = datetime(2026, 10, 19, 9, 30, tzinfo=TZ)


def build_repository(documents: dict | None = None) -> InMemoryRepository:
    return InMemoryRepository(timezone=TZ, documents=documents, now_provider=lambda: NOW)


class InMemoryRepositoryTest(unittest.TestCase):
    def test_customer_document_defaults(self) -> None:
        repository = build_repository(
            {
                "customers": {
                    "c1": {"name": "Aisha", "mealsPerDay": {"dinner": False}, "pricePerMonth": 900},
                    "c2": {"name": "Ravi", "phone": "055", "endDate": "2026-11-01", "isActive": False},
                }
            }
        )

        customers = {customer.customer_id: customer for customer in repository.list_customers()}

        self.assertEqual(customers["c1"].meals, MealPlan(lunch=None, dinner=False))
        self.assertEqual(customers["c1"].price_per_month, Decimal("900"))
        self.assertEqual(customers["c1"].end_date, date(2026, 10, 19))
        self.assertTrue(customers["c1"].is_active)
        self.assertEqual(customers["c2"].contact, "055")
        self.assertFalse(customers["c2"].is_active)

    def test_add_update_delete_customer(self) -> None:
        repository = build_repository()
        listener = Mock()
        repository.subscribe(listener)

        customer_id = repository.add_customer(
            Customer(customer_id="", name="Sara", end_date=date(2026, 11, 18), price_per_month=Decimal("700"))
        )
        customer = repository.get_customer(customer_id)
        assert customer is not None
        customer.total_paid = Decimal("350.5")
        repository.update_customer(customer)

        self.assertEqual(repository.documents(CUSTOMERS)[customer_id]["totalPaid"], 350.5)
        self.assertEqual(repository.get_customer(customer_id).total_paid, Decimal("350.5"))

        repository.delete_customer(customer_id)
        self.assertIsNone(repository.get_customer(customer_id))
        self.assertEqual(listener.call_count, 3)

    def test_update_missing_customer_raises(self) -> None:
        repository = build_repository()

        with self.assertRaises(RepositoryError):
            repository.update_customer(Customer(customer_id="ghost", name="Ghost", end_date=date(2026, 1, 1)))
        with self.assertRaises(RepositoryError):
            repository.delete_payment("ghost")

    def test_override_upsert_uses_date_and_customer_key(self) -> None:
        repository = build_repository()
        target = date(2026, 10, 19)

        repository.save_override(AttendanceOverride(target_date=target, customer_id="c1", lunch=False))
        repository.save_override(AttendanceOverride(target_date=target, customer_id="c1", dinner=False))

        documents = repository.documents(ATTENDANCE)
        self.assertEqual(list(documents), ["2026-10-19_c1"])
        self.assertEqual(documents["2026-10-19_c1"]["lunch"], False)
        self.assertEqual(documents["2026-10-19_c1"]["dinner"], False)

        overrides = repository.list_overrides([target, date(2026, 10, 20)])
        self.assertEqual(overrides[date(2026, 10, 20)], {})
        self.assertFalse(overrides[target]["c1"].lunch)

    def test_override_without_date_is_ignored(self) -> None:
        repository = build_repository({"attendance": {"x": {"customerId": "c1", "lunch": False}}})

        self.assertEqual(repository.list_overrides([date(2026, 10, 19)]), {date(2026, 10, 19): {}})

    def test_menu_read_normalises_legacy_shape(self) -> None:
        repository = build_repository({"menu": {"2026-10-20": {"lunch": {"main": "Rajma", "side": "Raita"}}}})

        menu = repository.get_day_menu(date(2026, 10, 20))

        self.assertEqual(menu.lunch.extra, "Raita")
        self.assertEqual(menu.dinner, MealSlot())
        self.assertIsNone(repository.get_day_menu(date(2026, 10, 21)))

    def test_menu_save_stamps_updated_at(self) -> None:
        repository = build_repository()

        repository.save_day_menu(date(2026, 10, 21), DayMenu(lunch=MealSlot(main="Kadhi")), updated_at=NOW)

        document = repository.documents(MENU)["2026-10-21"]
        self.assertEqual(document["lunch"]["main"], "Kadhi")
        self.assertEqual(document["updatedAt"], NOW.isoformat())

    def test_payments_filter_by_month(self) -> None:
        repository = build_repository()
        repository.add_payment(
            PaymentRecord(
                customer_id="c1",
                customer_name="Aisha",
                amount=Decimal("900"),
                paid_at=NOW,
                method="cash",
                month_tag="2026-10",
            )
        )
        repository.add_payment(
            PaymentRecord(
                customer_id="c1",
                customer_name="Aisha",
                amount=Decimal("900"),
                paid_at=datetime(2026, 9, 18, tzinfo=TZ),
                method="cash",
                month_tag="2026-09",
            )
        )

        self.assertEqual(len(repository.list_payments()), 2)
        october = repository.list_payments("2026-10")
        self.assertEqual(len(october), 1)
        self.assertEqual(october[0].amount, Decimal("900"))
        self.assertTrue(october[0].payment_id.startswith("pay_"))

    def test_unsubscribe_stops_notifications(self) -> None:
        repository = build_repository()
        listener = Mock()
        unsubscribe = repository.subscribe(listener)

        unsubscribe()
        unsubscribe()
        repository.save_override(AttendanceOverride(target_date=date(2026, 10, 19), customer_id="c1", lunch=False))

        listener.assert_not_called()

    def test_failing_listener_does_not_block_others(self) -> None:
        repository = build_repository()
        broken = Mock(side_effect=RuntimeError("boom"))
        healthy = Mock()
        repository.subscribe(broken)
        repository.subscribe(healthy)

        repository.save_override(AttendanceOverride(target_date=date(2026, 10, 19), customer_id="c1", lunch=False))

        healthy.assert_called_once()

    def test_seed_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            seed_file = Path(tmp) / "seed.json"
            seed_file.write_text(
                json.dumps({"customers": {"c1": {"name": "Aisha", "endDate": "2026-12-01"}}, "unknown": {}}),
                encoding="utf-8",
            )

            repository = InMemoryRepository.from_seed_file(seed_file, timezone=TZ, now_provider=lambda: NOW)

        self.assertEqual([customer.name for customer in repository.list_customers()], ["Aisha"])

    def test_state_file_survives_reload(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            state_file = Path(tmp) / "data" / "store.json"
            repository = InMemoryRepository(
                timezone=TZ,
                documents={"customers": {"c1": {"name": "Aisha", "endDate": "2026-12-01"}}},
                now_provider=lambda: NOW,
                state_file=state_file,
            )
            self.assertFalse(state_file.exists())

            repository.save_override(AttendanceOverride(target_date=date(2026, 10, 19), customer_id="c1", lunch=False))
            reloaded = InMemoryRepository.from_seed_file(
                state_file,
                timezone=TZ,
                now_provider=lambda: NOW,
                state_file=state_file,
            )
            payment_id = reloaded.add_payment(
                PaymentRecord(
                    customer_id="c1",
                    customer_name="Aisha",
                    amount=Decimal("900"),
                    paid_at=NOW,
                    method="cash",
                    month_tag="2026-10",
                )
            )
            stored = json.loads(state_file.read_text(encoding="utf-8"))

        overrides = reloaded.list_overrides([date(2026, 10, 19)])[date(2026, 10, 19)]
        self.assertFalse(overrides["c1"].lunch)
        self.assertEqual(stored["payments"][payment_id]["amount"], 900)
        self.assertIn("2026-10-19_c1", stored["attendance"])

    def test_unwritable_state_file_raises(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            blocker = Path(tmp) / "blocker"
            blocker.write_text("", encoding="utf-8")
            repository = InMemoryRepository(timezone=TZ, now_provider=lambda: NOW, state_file=blocker / "store.json")

            with self.assertRaises(RepositoryError):
                repository.save_override(AttendanceOverride(target_date=date(2026, 10, 19), customer_id="c1"))

    def test_project_seed_file_loads(self) -> None:
        seed_file = Path(__file__).resolve().parents[1] / "mocks" / "seed.json"

        repository = InMemoryRepository.from_seed_file(seed_file, timezone=TZ, now_provider=lambda: NOW)

        self.assertEqual(len(repository.list_customers()), 4)
        self.assertEqual(repository.get_day_menu(date(2026, 10, 20)).lunch.rice.type, "Plain")


def test_document_helpers() -> None:
    customer = customer_from_document("c9", {"name": "Omar", "endDate": {"seconds": 1756684800}}, TZ, today=date(2026, 1, 1))

    assert customer.end_date == date(2025, 9, 1)
    assert decimal_to_number(Decimal("900.00")) == 900
    assert decimal_to_number(Decimal("12.5")) == 12.5
    assert to_optional_bool(None) is None
    assert to_optional_bool(0) is False
