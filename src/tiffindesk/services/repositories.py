from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
import copy
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import itertools
import json
from pathlib import Path
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from loguru import logger

from tiffindesk.domain.ledger import month_tag
from tiffindesk.domain.menu import day_menu_to_document, normalize_day_menu
from tiffindesk.domain.models import AttendanceOverride, Customer, DayMenu, MealPlan, PaymentRecord
from tiffindesk.domain.subscription import coerce_date, to_date, to_datetime
from tiffindesk.services.clock import Clock


ChangeListener = Callable[[], None]
Unsubscribe = Callable[[], None]

CUSTOMERS = "customers"
ATTENDANCE = "attendance"
MENU = "menu"
PAYMENTS = "payments"
COLLECTIONS = (CUSTOMERS, ATTENDANCE, MENU, PAYMENTS)


class RepositoryError(Exception):
    pass


class TiffinRepository(Protocol):
    def list_customers(self) -> list[Customer]: ...

    def get_customer(self, customer_id: str) -> Customer | None: ...

    def add_customer(self, customer: Customer) -> str: ...

    def update_customer(self, customer: Customer) -> None: ...

    def delete_customer(self, customer_id: str) -> None: ...

    def list_overrides(self, target_dates: Iterable[date]) -> dict[date, dict[str, AttendanceOverride]]: ...

    def save_override(self, override: AttendanceOverride) -> None: ...

    def get_day_menu(self, target_date: date) -> DayMenu | None: ...

    def save_day_menu(self, target_date: date, menu: DayMenu, *, updated_at: datetime) -> None: ...

    def list_payments(self, month: str | None = None) -> list[PaymentRecord]: ...

    def add_payment(self, record: PaymentRecord) -> str: ...

    def delete_payment(self, payment_id: str) -> None: ...

    def subscribe(self, listener: ChangeListener) -> Unsubscribe: ...


class InMemoryRepository:
    """Offline store double.

    Documents are kept in the same raw shape the hosted document store uses,
    so every read goes through the same parsing and menu normalisation as
    production data. Listeners are notified synchronously after each write.
    With a ``state_file`` every write also rewrites that JSON file, so the
    documents outlive the process.
    """

    def __init__(
        self,
        *,
        timezone: ZoneInfo,
        documents: Mapping[str, Mapping[str, Mapping[str, Any]]] | None = None,
        now_provider: Callable[[], datetime] | None = None,
        state_file: str | Path | None = None,
    ) -> None:
        self._timezone = timezone
        self._state_file = Path(state_file) if state_file else None
        self._clock = Clock(timezone, now_provider)
        self._collections: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in COLLECTIONS}
        for name, docs in (documents or {}).items():
            if name not in self._collections:
                logger.warning("memory_store.seed: unknown collection={} ignored", name)
                continue
            self._collections[name] = {str(doc_id): copy.deepcopy(dict(doc)) for doc_id, doc in docs.items()}
        self._listeners: list[ChangeListener] = []
        self._ids = itertools.count(1)

    @classmethod
    def from_seed_file(
        cls,
        path: str | Path,
        *,
        timezone: ZoneInfo,
        now_provider: Callable[[], datetime] | None = None,
        state_file: str | Path | None = None,
    ) -> "InMemoryRepository":
        seed_file = Path(path)
        with seed_file.open("r", encoding="utf-8") as file:
            documents = json.load(file)
        if not isinstance(documents, dict):
            raise RepositoryError(f"seed file must contain a JSON object: {seed_file}")
        repository = cls(timezone=timezone, documents=documents, now_provider=now_provider, state_file=state_file)
        logger.info(
            "memory_store.load: file={} customers={} attendance={} menu={} payments={}",
            seed_file,
            *(len(repository._collections[name]) for name in COLLECTIONS),
        )
        return repository

    def list_customers(self) -> list[Customer]:
        today = self._today()
        return [
            customer_from_document(doc_id, data, self._timezone, today=today)
            for doc_id, data in self._collections[CUSTOMERS].items()
        ]

    def get_customer(self, customer_id: str) -> Customer | None:
        data = self._collections[CUSTOMERS].get(customer_id)
        if data is None:
            return None
        return customer_from_document(customer_id, data, self._timezone, today=self._today())

    def add_customer(self, customer: Customer) -> str:
        customer_id = customer.customer_id or self._new_id("cust")
        self._collections[CUSTOMERS][customer_id] = customer_to_document(customer)
        self._notify()
        return customer_id

    def update_customer(self, customer: Customer) -> None:
        existing = self._collections[CUSTOMERS].get(customer.customer_id)
        if existing is None:
            raise RepositoryError(f"customer not found: {customer.customer_id}")
        existing.update(customer_to_document(customer))
        self._notify()

    def delete_customer(self, customer_id: str) -> None:
        if self._collections[CUSTOMERS].pop(customer_id, None) is None:
            raise RepositoryError(f"customer not found: {customer_id}")
        self._notify()

    def list_overrides(self, target_dates: Iterable[date]) -> dict[date, dict[str, AttendanceOverride]]:
        wanted = set(target_dates)
        result: dict[date, dict[str, AttendanceOverride]] = {target: {} for target in wanted}
        for data in self._collections[ATTENDANCE].values():
            override = override_from_document(data, self._timezone)
            if override is None or override.target_date not in wanted:
                continue
            result[override.target_date][override.customer_id] = override
        return result

    def save_override(self, override: AttendanceOverride) -> None:
        documents = self._collections[ATTENDANCE]
        merged = dict(documents.get(override.document_id, {}))
        merged.update(override_to_document(override))
        documents[override.document_id] = merged
        self._notify()

    def get_day_menu(self, target_date: date) -> DayMenu | None:
        data = self._collections[MENU].get(target_date.isoformat())
        if data is None:
            return None
        return normalize_day_menu(data)

    def save_day_menu(self, target_date: date, menu: DayMenu, *, updated_at: datetime) -> None:
        documents = self._collections[MENU]
        key = target_date.isoformat()
        merged = dict(documents.get(key, {}))
        merged.update(day_menu_to_document(menu))
        merged["updatedAt"] = updated_at.isoformat()
        documents[key] = merged
        self._notify()

    def list_payments(self, month: str | None = None) -> list[PaymentRecord]:
        records = [
            payment_from_document(doc_id, data, self._timezone, now=self._now())
            for doc_id, data in self._collections[PAYMENTS].items()
        ]
        if month is None:
            return records
        return [record for record in records if record.month_tag == month]

    def add_payment(self, record: PaymentRecord) -> str:
        payment_id = record.payment_id or self._new_id("pay")
        self._collections[PAYMENTS][payment_id] = payment_to_document(record)
        self._notify()
        return payment_id

    def delete_payment(self, payment_id: str) -> None:
        if self._collections[PAYMENTS].pop(payment_id, None) is None:
            raise RepositoryError(f"payment not found: {payment_id}")
        self._notify()

    def subscribe(self, listener: ChangeListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def documents(self, collection: str) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._collections[collection])

    def _notify(self) -> None:
        self._save_state()
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("memory_store.notify: listener failed")

    def _save_state(self) -> None:
        if self._state_file is None:
            return
        target = self._state_file
        temp = target.with_name(f"{target.name}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with temp.open("w", encoding="utf-8") as file:
                json.dump(self._collections, file, ensure_ascii=False, indent=2)
            temp.replace(target)
        except OSError as exc:
            raise RepositoryError(f"could not write state file {target}: {exc}") from exc
        logger.debug("memory_store.save: file={}", target)

    def _new_id(self, prefix: str) -> str:
        while True:
            candidate = f"{prefix}_{next(self._ids)}"
            if all(candidate not in docs for docs in self._collections.values()):
                return candidate

    def _now(self) -> datetime:
        return self._clock.now()

    def _today(self) -> date:
        return self._clock.today()


def customer_from_document(customer_id: str, data: Mapping[str, Any], tz: ZoneInfo, *, today: date) -> Customer:
    meals = data.get("mealsPerDay")
    if not isinstance(meals, Mapping):
        meals = {}
    start_date = coerce_date(data.get("startDate"), tz)
    return Customer(
        customer_id=customer_id,
        name=str(data.get("name") or ""),
        contact=str(data.get("contact") or data.get("phone") or ""),
        meals=MealPlan(lunch=to_optional_bool(meals.get("lunch")), dinner=to_optional_bool(meals.get("dinner"))),
        price_per_month=to_decimal(data.get("pricePerMonth")),
        start_date=start_date,
        end_date=to_date(data.get("endDate"), tz, fallback=today),
        total_paid=to_decimal(data.get("totalPaid")),
        notes=str(data.get("notes") or ""),
        is_active=to_optional_bool(data.get("isActive")) is not False,
    )


def customer_to_document(customer: Customer) -> dict[str, Any]:
    meals: dict[str, bool] = {}
    if customer.meals.lunch is not None:
        meals["lunch"] = customer.meals.lunch
    if customer.meals.dinner is not None:
        meals["dinner"] = customer.meals.dinner
    return {
        "name": customer.name,
        "contact": customer.contact,
        "mealsPerDay": meals,
        "pricePerMonth": decimal_to_number(customer.price_per_month),
        "startDate": customer.start_date.isoformat() if customer.start_date else None,
        "endDate": customer.end_date.isoformat(),
        "totalPaid": decimal_to_number(customer.total_paid),
        "notes": customer.notes,
        "isActive": customer.is_active,
    }


def override_from_document(data: Mapping[str, Any], tz: ZoneInfo) -> AttendanceOverride | None:
    target_date = coerce_date(data.get("date"), tz)
    customer_id = data.get("customerId")
    if target_date is None or not customer_id:
        return None
    return AttendanceOverride(
        target_date=target_date,
        customer_id=str(customer_id),
        lunch=to_optional_bool(data.get("lunch")),
        dinner=to_optional_bool(data.get("dinner")),
        updated_at=to_datetime(data.get("updatedAt"), tz),
    )


def override_to_document(override: AttendanceOverride) -> dict[str, Any]:
    document: dict[str, Any] = {
        "customerId": override.customer_id,
        "date": override.target_date.isoformat(),
    }
    if override.lunch is not None:
        document["lunch"] = override.lunch
    if override.dinner is not None:
        document["dinner"] = override.dinner
    if override.updated_at is not None:
        document["updatedAt"] = override.updated_at.isoformat()
    return document


def payment_from_document(payment_id: str, data: Mapping[str, Any], tz: ZoneInfo, *, now: datetime) -> PaymentRecord:
    paid_at = to_datetime(data.get("date"), tz) or now
    tag = data.get("monthTag")
    return PaymentRecord(
        payment_id=payment_id,
        customer_id=str(data.get("customerId") or ""),
        customer_name=str(data.get("customerName") or ""),
        amount=to_decimal(data.get("amount")),
        paid_at=paid_at,
        method=str(data.get("method") or ""),
        month_tag=tag if isinstance(tag, str) and tag else month_tag(paid_at.astimezone(tz).date()),
    )


def payment_to_document(record: PaymentRecord) -> dict[str, Any]:
    return {
        "customerId": record.customer_id,
        "customerName": record.customer_name,
        "amount": decimal_to_number(record.amount),
        "date": record.paid_at.isoformat(),
        "method": record.method,
        "monthTag": record.month_tag,
    }


def to_decimal(value: object) -> Decimal:
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def decimal_to_number(value: Decimal) -> int | float:
    normalized = value.normalize()
    if normalized == normalized.to_integral():
        return int(normalized)
    return float(normalized)


def to_optional_bool(value: object) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return int(value) != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"true", "1", "yes", "y", "on"}:
            return True
        if text in {"false", "0", "no", "n", "off"}:
            return False
        return None
    if isinstance(value, list) and value:
        return to_optional_bool(value[0])
    return None
