from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import lark_oapi as lark
from lark_oapi.api.bitable.v1 import (
    AppTableRecord,
    CreateAppTableRecordRequest,
    DeleteAppTableRecordRequest,
    ListAppTableFieldRequest,
    ListAppTableRecordRequest,
    UpdateAppTableRecordRequest,
)

from tiffindesk.config import FeishuConfig


class FeishuApiError(Exception):
    pass


FIELD_TYPE_TEXT = 1
FIELD_TYPE_NUMBER = 2
FIELD_TYPE_DATETIME = 5
FIELD_TYPE_CHECKBOX = 7

# Fields whose values the repository reads as booleans or numbers must be
# backed by a column of the matching type.
_REQUIRED_FIELD_TYPES: dict[str, dict[str, int]] = {
    "customers": {
        "lunch": FIELD_TYPE_CHECKBOX,
        "dinner": FIELD_TYPE_CHECKBOX,
        "is_active": FIELD_TYPE_CHECKBOX,
        "price_per_month": FIELD_TYPE_NUMBER,
        "total_paid": FIELD_TYPE_NUMBER,
    },
    "attendance": {
        "lunch": FIELD_TYPE_CHECKBOX,
        "dinner": FIELD_TYPE_CHECKBOX,
    },
    "payments": {
        "amount": FIELD_TYPE_NUMBER,
    },
}


@dataclass(slots=True)
class FieldMeta:
    field_id: str
    field_name: str
    field_type: int


@dataclass(slots=True)
class TableFieldMapping:
    table_alias: str
    table_id: str
    by_logical_key: dict[str, FieldMeta]


class FeishuFactory:
    @staticmethod
    def build_client(config: FeishuConfig) -> lark.Client:
        return (
            lark.Client.builder()
            .app_id(config.app_id)
            .app_secret(config.app_secret)
            .log_level(lark.LogLevel.INFO)
            .build()
        )


class BitableAdapter:
    def __init__(self, client: lark.Client, app_token: str) -> None:
        self._client = client
        self._app_token = app_token

    def list_fields(self, table_id: str) -> list[Any]:
        items: list[Any] = []
        page_token: str | None = None

        while True:
            builder = (
                ListAppTableFieldRequest.builder()
                .app_token(self._app_token)
                .table_id(table_id)
                .page_size(500)
            )
            if page_token:
                builder = builder.page_token(page_token)

            response = self._client.bitable.v1.app_table_field.list(builder.build())
            self._ensure_success("bitable.v1.app_table_field.list", response)

            body = response.data
            if body and body.items:
                items.extend(body.items)
            if not body or not body.has_more:
                break
            page_token = body.page_token

        return items

    def list_records(self, table_id: str) -> list[AppTableRecord]:
        items: list[AppTableRecord] = []
        page_token: str | None = None

        while True:
            builder = (
                ListAppTableRecordRequest.builder()
                .app_token(self._app_token)
                .table_id(table_id)
                .page_size(500)
            )
            if page_token:
                builder = builder.page_token(page_token)

            response = self._client.bitable.v1.app_table_record.list(builder.build())
            self._ensure_success("bitable.v1.app_table_record.list", response)

            body = response.data
            if body and body.items:
                items.extend(body.items)
            if not body or not body.has_more:
                break
            page_token = body.page_token

        return items

    def create_record(self, table_id: str, fields: dict[str, Any]) -> AppTableRecord:
        request = (
            CreateAppTableRecordRequest.builder()
            .app_token(self._app_token)
            .table_id(table_id)
            .request_body(AppTableRecord.builder().fields(fields).build())
            .build()
        )
        response = self._client.bitable.v1.app_table_record.create(request)
        self._ensure_success("bitable.v1.app_table_record.create", response)
        if response.data is None or response.data.record is None:
            raise FeishuApiError("create record failed: response.data.record is empty")
        return response.data.record

    def update_record(self, table_id: str, record_id: str, fields: dict[str, Any]) -> AppTableRecord:
        request = (
            UpdateAppTableRecordRequest.builder()
            .app_token(self._app_token)
            .table_id(table_id)
            .record_id(record_id)
            .request_body(AppTableRecord.builder().fields(fields).build())
            .build()
        )
        response = self._client.bitable.v1.app_table_record.update(request)
        self._ensure_success("bitable.v1.app_table_record.update", response)
        if response.data is None or response.data.record is None:
            raise FeishuApiError("update record failed: response.data.record is empty")
        return response.data.record

    def delete_record(self, table_id: str, record_id: str) -> None:
        request = (
            DeleteAppTableRecordRequest.builder()
            .app_token(self._app_token)
            .table_id(table_id)
            .record_id(record_id)
            .build()
        )
        response = self._client.bitable.v1.app_table_record.delete(request)
        self._ensure_success("bitable.v1.app_table_record.delete", response)

    @staticmethod
    def _ensure_success(api_name: str, response: Any) -> None:
        if response.success():
            return
        log_id = response.get_log_id() if hasattr(response, "get_log_id") else ""
        raise FeishuApiError(
            f"{api_name} failed, code={response.code}, msg={response.msg}, log_id={log_id}"
        )


class FieldMappingResolver:
    def __init__(self, bitable: BitableAdapter) -> None:
        self._bitable = bitable

    def resolve(self, config: FeishuConfig) -> dict[str, TableFieldMapping]:
        result: dict[str, TableFieldMapping] = {}

        for table_alias, table_id in config.tables.model_dump().items():
            expected = getattr(config.field_names, table_alias).model_dump()
            required_types = _REQUIRED_FIELD_TYPES.get(table_alias, {})
            fields = self._bitable.list_fields(table_id)
            name_to_metas: dict[str, list[FieldMeta]] = {}
            for field in fields:
                meta = FieldMeta(field_id=field.field_id, field_name=field.field_name, field_type=field.type)
                name_to_metas.setdefault(meta.field_name, []).append(meta)

            logical_mapping: dict[str, FieldMeta] = {}
            for logical_key, expected_name in expected.items():
                metas = name_to_metas.get(expected_name, [])
                if not metas:
                    raise FeishuApiError(
                        f"field resolution failed: table={table_alias}, logical={logical_key}, name={expected_name} not found"
                    )
                if len(metas) > 1:
                    raise FeishuApiError(
                        f"field resolution failed: table={table_alias}, logical={logical_key}, name={expected_name} is duplicated"
                    )
                meta = metas[0]
                required_type = required_types.get(logical_key)
                if required_type is not None and meta.field_type != required_type:
                    raise FeishuApiError(
                        f"field type mismatch: table={table_alias}, logical={logical_key}, name={expected_name}, "
                        f"type={meta.field_type}, expected={required_type}"
                    )
                logical_mapping[logical_key] = meta

            result[table_alias] = TableFieldMapping(
                table_alias=table_alias,
                table_id=table_id,
                by_logical_key=logical_mapping,
            )

        return result
