from __future__ import annotations

from pathlib import Path
import tomllib
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


class TablesConfig(BaseModel):
    customers: str
    attendance: str
    menu: str
    payments: str


class CustomerFieldNames(BaseModel):
    name: str
    contact: str
    lunch: str
    dinner: str
    price_per_month: str
    start_date: str
    end_date: str
    total_paid: str
    notes: str
    is_active: str


class AttendanceFieldNames(BaseModel):
    date: str
    customer_id: str
    lunch: str
    dinner: str
    updated_at: str


class MenuFieldNames(BaseModel):
    date: str
    lunch: str
    dinner: str
    updated_at: str


class PaymentFieldNames(BaseModel):
    customer_id: str
    customer_name: str
    amount: str
    date: str
    method: str
    month_tag: str


class FieldNamesConfig(BaseModel):
    customers: CustomerFieldNames
    attendance: AttendanceFieldNames
    menu: MenuFieldNames
    payments: PaymentFieldNames


class FeishuConfig(BaseModel):
    app_id: str
    app_secret: str
    app_token: str
    tables: TablesConfig
    field_names: FieldNamesConfig

    @model_validator(mode="after")
    def validate_unique_field_names(self) -> "FeishuConfig":
        _validate_no_duplicate_fields(self.field_names.customers.model_dump(), "field_names.customers")
        _validate_no_duplicate_fields(self.field_names.attendance.model_dump(), "field_names.attendance")
        _validate_no_duplicate_fields(self.field_names.menu.model_dump(), "field_names.menu")
        _validate_no_duplicate_fields(self.field_names.payments.model_dump(), "field_names.payments")
        return self


class StoreConfig(BaseModel):
    backend: Literal["memory", "bitable"] = "memory"
    seed_file: str | None = None
    state_file: str | None = None
    poll_interval_seconds: int = 30

    @field_validator("poll_interval_seconds")
    @classmethod
    def validate_poll_interval(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("poll_interval_seconds must be greater than 0")
        return value


class BillingConfig(BaseModel):
    cycle_days: int = 30
    expiring_soon_days: int = 3
    currency_label: str = "DHS"
    default_payment_method: str = "cash"

    @field_validator("cycle_days")
    @classmethod
    def validate_cycle_days(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("cycle_days must be greater than 0")
        return value

    @field_validator("expiring_soon_days")
    @classmethod
    def validate_expiring_soon_days(cls, value: int) -> int:
        if value < 0:
            raise ValueError("expiring_soon_days must not be negative")
        return value

    @field_validator("currency_label", "default_payment_method")
    @classmethod
    def validate_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("value must not be blank")
        return value


class LoggingConfig(BaseModel):
    file_path: str = "logs/tiffindesk.log"
    max_size_mb: int = 20

    @field_validator("file_path")
    @classmethod
    def validate_file_path(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("log file path must not be empty")
        return value

    @field_validator("max_size_mb")
    @classmethod
    def validate_max_size_mb(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("log file size limit must be greater than 0")
        return value

    @property
    def max_size_bytes(self) -> int:
        return self.max_size_mb * 1024 * 1024


class RuntimeConfig(BaseModel):
    timezone: str = "Asia/Dubai"
    store: StoreConfig = Field(default_factory=StoreConfig)
    feishu: FeishuConfig | None = None
    billing: BillingConfig = Field(default_factory=BillingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("timezone must not be empty")
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"invalid timezone: {value}") from exc
        return value

    @model_validator(mode="after")
    def validate_backend_settings(self) -> "RuntimeConfig":
        if self.store.backend == "bitable" and self.feishu is None:
            raise ValueError("store.backend = 'bitable' requires a [feishu] section")
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class ConfigError(Exception):
    pass


def load_runtime_config(
    shared_path: str | Path = "config.shared.toml",
    local_path: str | Path = "config.local.toml",
) -> RuntimeConfig:
    shared_file = Path(shared_path)
    local_file = Path(local_path)

    if not shared_file.exists():
        raise ConfigError(f"shared config not found: {shared_file}")

    with shared_file.open("rb") as file:
        shared = tomllib.load(file)
    local: dict[str, Any] = {}
    if local_file.exists():
        with local_file.open("rb") as file:
            local = tomllib.load(file)

    merged = _deep_merge(shared, local)

    try:
        return RuntimeConfig.model_validate(merged)
    except Exception as exc:  # pydantic validation errors
        raise ConfigError(f"config validation failed: {exc}") from exc


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _validate_no_duplicate_fields(mapping: dict[str, str], name: str) -> None:
    reverse: dict[str, str] = {}
    for logical_key, field_name in mapping.items():
        if not field_name:
            raise ValueError(f"{name}.{logical_key} must not be empty")
        if field_name in reverse:
            raise ValueError(f"duplicate field name in {name}: {field_name} (keys: {reverse[field_name]}, {logical_key})")
        reverse[field_name] = logical_key
