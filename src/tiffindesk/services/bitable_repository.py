from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import date, datetime, time
import hashlib
import json
import threading
import time as mono_time
from typing import Any
from zoneinfo import ZoneInfo

from loguru import logger

from tiffindesk.adapters.feishu_clients import FIELD_TYPE_DATETIME, BitableAdapter, TableFieldMapping
from tiffindesk.domain.ledger import month_tag
from tiffindesk.domain.menu import meal_slot_to_document, normalize_day_menu
from tiffindesk.domain.models import AttendanceOverride, Customer, DayMenu, MealPlan, PaymentRecord
from tiffindesk.domain.subscription import coerce_date, to_date, to_datetime
from tiffindesk.services.clock import Clock
from tiffindesk.services.repositories import (
    ATTENDANCE,
    COLLECTIONS,
    CUSTOMERS,
    MENU,
    PAYMENTS,
    ChangeListener,
    Unsubscribe,
    decimal_to_number,
    to_decimal,
    to_optional_bool,
)


class BitableRepository:
    """Repository over four Feishu Bitable tables.

    Bitable omits unchecked checkbox cells from a record, so a missing
    checkbox reads as ``False`` here. Meal slots are stored as JSON text.
    """

    def __init__(
        self,
        *,
        timezone: ZoneInfo,
        bitable: BitableAdapter,
        mappings: dict[str, TableFieldMapping],
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._timezone = timezone
        self._bitable = bitable
        self._mappings = mappings
        self._clock = Clock(timezone, now_provider)
        self._listeners: list[ChangeListener] = []
        self._fingerprint: str | None = None
        self._poll_lock = threading.Lock()

    def list_customers(self) -> list[Customer]:
        records = self._bitable.list_records(self._table_id(CUSTOMERS))
        fields = self._table_fields(CUSTOMERS)
        today = self._today()
        return [self._customer_from_record(record.record_id, record.fields or {}, fields, today) for record in records]

    def get_customer(self, customer_id: str) -> Customer | None:
        for customer in self.list_customers():
            if customer.customer_id == customer_id:
                return customer
        return None

    def add_customer(self, customer: Customer) -> str:
        created = self._bitable.create_record(self._table_id(CUSTOMERS), self._customer_payload(customer))
        logger.debug("customers.create: record_id={} name={}", created.record_id, customer.name)
        self._notify()
        return created.record_id

    def update_customer(self, customer: Customer) -> None:
        self._bitable.update_record(
            self._table_id(CUSTOMERS),
            customer.customer_id,
            self._customer_payload(customer),
        )
        logger.debug("customers.update: record_id={}", customer.customer_id)
        self._notify()

    def delete_customer(self, customer_id: str) -> None:
        self._bitable.delete_record(self._table_id(CUSTOMERS), customer_id)
        logger.debug("customers.delete: record_id={}", customer_id)
        self._notify()

    def list_overrides(self, target_dates: Iterable[date]) -> dict[date, dict[str, AttendanceOverride]]:
        wanted = set(target_dates)
        result: dict[date, dict[str, AttendanceOverride]] = {target: {} for target in wanted}
        for _, override in self._attendance_rows():
            if override.target_date in wanted:
                result[override.target_date][override.customer_id] = override
        return result

    def save_override(self, override: AttendanceOverride) -> None:
        started_at = mono_time.monotonic()
        table_id = self._table_id(ATTENDANCE)
        payload = self._override_payload(override)
        match = next(
            (
                record_id
                for record_id, existing in self._attendance_rows()
                if existing.target_date == override.target_date and existing.customer_id == override.customer_id
            ),
            None,
        )
        if match:
            self._bitable.update_record(table_id, match, payload)
            mode = "scan_update"
        else:
            self._bitable.create_record(table_id, payload)
            mode = "scan_create"
        logger.debug(
            "attendance.upsert: mode={} date={} customer={} total={}ms",
            mode,
            override.target_date.isoformat(),
            override.customer_id,
            int((mono_time.monotonic() - started_at) * 1000),
        )
        self._notify()

    def get_day_menu(self, target_date: date) -> DayMenu | None:
        match = self._find_menu_record(target_date)
        if match is None:
            return None
        _, data = match
        fields = self._table_fields(MENU)
        return normalize_day_menu(
            {
                "lunch": _decode_slot(data.get(fields["lunch"])),
                "dinner": _decode_slot(data.get(fields["dinner"])),
            }
        )

    def save_day_menu(self, target_date: date, menu: DayMenu, *, updated_at: datetime) -> None:
        fields = self._table_fields(MENU)
        payload = {
            fields["date"]: self._date_field_value(MENU, "date", target_date),
            fields["lunch"]: json.dumps(meal_slot_to_document(menu.lunch), ensure_ascii=False),
            fields["dinner"]: json.dumps(meal_slot_to_document(menu.dinner), ensure_ascii=False),
            fields["updated_at"]: self._datetime_field_value(MENU, "updated_at", updated_at),
        }
        table_id = self._table_id(MENU)
        match = self._find_menu_record(target_date)
        if match is None:
            self._bitable.create_record(table_id, payload)
        else:
            self._bitable.update_record(table_id, match[0], payload)
        logger.debug("menu.save: date={} mode={}", target_date.isoformat(), "create" if match is None else "update")
        self._notify()

    def list_payments(self, month: str | None = None) -> list[PaymentRecord]:
        records = self._bitable.list_records(self._table_id(PAYMENTS))
        fields = self._table_fields(PAYMENTS)
        now = self._now()
        payments: list[PaymentRecord] = []
        for record in records:
            data = record.fields or {}
            paid_at = to_datetime(data.get(fields["date"]), self._timezone) or now
            tag = _to_text(data.get(fields["month_tag"])) or month_tag(paid_at.astimezone(self._timezone).date())
            payment = PaymentRecord(
                payment_id=record.record_id,
                customer_id=_to_text(data.get(fields["customer_id"])),
                customer_name=_to_text(data.get(fields["customer_name"])),
                amount=to_decimal(data.get(fields["amount"])),
                paid_at=paid_at,
                method=_to_text(data.get(fields["method"])),
                month_tag=tag,
            )
            if month is None or payment.month_tag == month:
                payments.append(payment)
        return payments

    def add_payment(self, record: PaymentRecord) -> str:
        fields = self._table_fields(PAYMENTS)
        payload = {
            fields["customer_id"]: record.customer_id,
            fields["customer_name"]: record.customer_name,
            fields["amount"]: decimal_to_number(record.amount),
            fields["date"]: self._datetime_field_value(PAYMENTS, "date", record.paid_at),
            fields["method"]: record.method,
            fields["month_tag"]: record.month_tag,
        }
        created = self._bitable.create_record(self._table_id(PAYMENTS), payload)
        logger.debug("payments.create: record_id={} customer={}", created.record_id, record.customer_id)
        self._notify()
        return created.record_id

    def delete_payment(self, payment_id: str) -> None:
        self._bitable.delete_record(self._table_id(PAYMENTS), payment_id)
        logger.debug("payments.delete: record_id={}", payment_id)
        self._notify()

    def subscribe(self, listener: ChangeListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def poll_changes(self) -> bool:
        """Re-read every table and notify listeners when anything changed since the last poll."""
        with self._poll_lock:
            digest = hashlib.sha256()
            for alias in COLLECTIONS:
                records = self._bitable.list_records(self._table_id(alias))
                snapshot = sorted(
                    ((record.record_id, record.fields or {}) for record in records),
                    key=lambda item: item[0],
                )
                digest.update(json.dumps([alias, snapshot], sort_keys=True, default=str).encode("utf-8"))
            fingerprint = digest.hexdigest()
            changed = self._fingerprint is not None and fingerprint != self._fingerprint
            self._fingerprint = fingerprint
        if changed:
            logger.debug("bitable.poll: change detected")
            self._notify()
        return changed

    def _customer_from_record(
        self,
        record_id: str,
        data: dict[str, Any],
        fields: dict[str, str],
        today: date,
    ) -> Customer:
        return Customer(
            customer_id=record_id,
            name=_to_text(data.get(fields["name"])),
            contact=_to_text(data.get(fields["contact"])),
            meals=MealPlan(
                lunch=_to_checkbox(data.get(fields["lunch"])),
                dinner=_to_checkbox(data.get(fields["dinner"])),
            ),
            price_per_month=to_decimal(data.get(fields["price_per_month"])),
            start_date=coerce_date(data.get(fields["start_date"]), self._timezone),
            end_date=to_date(data.get(fields["end_date"]), self._timezone, fallback=today),
            total_paid=to_decimal(data.get(fields["total_paid"])),
            notes=_to_text(data.get(fields["notes"])),
            is_active=_to_checkbox(data.get(fields["is_active"])),
        )

    def _customer_payload(self, customer: Customer) -> dict[str, Any]:
        fields = self._table_fields(CUSTOMERS)
        payload: dict[str, Any] = {
            fields["name"]: customer.name,
            fields["contact"]: customer.contact,
            fields["lunch"]: customer.meals.lunch is not False,
            fields["dinner"]: customer.meals.dinner is not False,
            fields["price_per_month"]: decimal_to_number(customer.price_per_month),
            fields["end_date"]: self._date_field_value(CUSTOMERS, "end_date", customer.end_date),
            fields["total_paid"]: decimal_to_number(customer.total_paid),
            fields["notes"]: customer.notes,
            fields["is_active"]: customer.is_active,
        }
        if customer.start_date is not None:
            payload[fields["start_date"]] = self._date_field_value(CUSTOMERS, "start_date", customer.start_date)
        return payload

    def _attendance_rows(self) -> list[tuple[str, AttendanceOverride]]:
        records = self._bitable.list_records(self._table_id(ATTENDANCE))
        fields = self._table_fields(ATTENDANCE)

        rows_by_key: dict[tuple[date, str], tuple[str, AttendanceOverride]] = {}
        for record in records:
            data = record.fields or {}
            target_date = coerce_date(data.get(fields["date"]), self._timezone)
            customer_id = _to_text(data.get(fields["customer_id"]))
            if target_date is None or not customer_id:
                continue
            override = AttendanceOverride(
                target_date=target_date,
                customer_id=customer_id,
                lunch=_to_checkbox(data.get(fields["lunch"])),
                dinner=_to_checkbox(data.get(fields["dinner"])),
                updated_at=to_datetime(data.get(fields["updated_at"]), self._timezone),
            )
            key = (target_date, customer_id)
            if key in rows_by_key:
                rows_by_key.pop(key)
            rows_by_key[key] = (record.record_id, override)
        return list(rows_by_key.values())

    def _override_payload(self, override: AttendanceOverride) -> dict[str, Any]:
        fields = self._table_fields(ATTENDANCE)
        payload: dict[str, Any] = {
            fields["date"]: self._date_field_value(ATTENDANCE, "date", override.target_date),
            fields["customer_id"]: override.customer_id,
            fields["lunch"]: override.lunch is not False,
            fields["dinner"]: override.dinner is not False,
        }
        if override.updated_at is not None:
            payload[fields["updated_at"]] = self._datetime_field_value(ATTENDANCE, "updated_at", override.updated_at)
        return payload

    def _find_menu_record(self, target_date: date) -> tuple[str, dict[str, Any]] | None:
        records = self._bitable.list_records(self._table_id(MENU))
        date_field = self._table_fields(MENU)["date"]
        match: tuple[str, dict[str, Any]] | None = None
        for record in records:
            data = record.fields or {}
            if coerce_date(data.get(date_field), self._timezone) == target_date:
                match = (record.record_id, data)
        return match

    def _date_field_value(self, table_alias: str, logical_key: str, value: date) -> int | str:
        if self._field_type(table_alias, logical_key) == FIELD_TYPE_DATETIME:
            return _to_date_millis(value, self._timezone)
        return value.isoformat()

    def _datetime_field_value(self, table_alias: str, logical_key: str, value: datetime) -> int | str:
        if self._field_type(table_alias, logical_key) == FIELD_TYPE_DATETIME:
            return int(value.timestamp() * 1000)
        return value.isoformat()

    def _field_type(self, table_alias: str, logical_key: str) -> int:
        return self._mappings[table_alias].by_logical_key[logical_key].field_type

    def _table_id(self, table_alias: str) -> str:
        return self._mappings[table_alias].table_id

    def _table_fields(self, table_alias: str) -> dict[str, str]:
        mapping = self._mappings[table_alias].by_logical_key
        return {logical_key: meta.field_name for logical_key, meta in mapping.items()}

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("bitable.notify: listener failed")

    def _now(self) -> datetime:
        return self._clock.now()

    def _today(self) -> date:
        return self._clock.today()


def _decode_slot(value: object) -> object:
    text = _to_text(value).strip()
    if not text:
        return None
    if text.startswith("{"):
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.warning("menu.decode: invalid slot json ignored: {}", text[:80])
            return None
    # Hand-typed cells hold just the dish name.
    return {"main": text}


def _to_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, dict):
                parts.append(str(item.get("text") or item.get("name") or ""))
            else:
                parts.append(_to_text(item))
        return "".join(parts)
    if isinstance(value, dict):
        return str(value.get("text") or value.get("name") or "")
    return str(value)


def _to_checkbox(value: object) -> bool:
    return to_optional_bool(value) is True


def _to_date_millis(target_date: date, tz: ZoneInfo) -> int:
    dt = datetime.combine(target_date, time.min, tzinfo=tz)
    return int(dt.timestamp() * 1000)
