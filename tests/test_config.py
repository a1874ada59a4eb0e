from __future__ import annotations

from pathlib import Path
import sys
import tempfile
import textwrap

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from tiffindesk.config import ConfigError, load_runtime_config


FEISHU_SECTION = textwrap.dedent(
    """
    [feishu]
    app_token = "app"

    [feishu.tables]
    customers = "t1"
    attendance = "t2"
    menu = "t3"
    payments = "t4"

    [feishu.field_names.customers]
    name = "Name"
    contact = "Contact"
    lunch = "Lunch"
    dinner = "Dinner"
    price_per_month = "Price"
    start_date = "Start"
    end_date = "End"
    total_paid = "Paid"
    notes = "Notes"
    is_active = "Active"

    [feishu.field_names.attendance]
    date = "Date"
    customer_id = "Customer"
    lunch = "Lunch"
    dinner = "Dinner"
    updated_at = "Updated"

    [feishu.field_names.menu]
    date = "Date"
    lunch = "Lunch"
    dinner = "Dinner"
    updated_at = "Updated"

    [feishu.field_names.payments]
    customer_id = "Customer"
    customer_name = "Customer name"
    amount = "Amount"
    date = "Date"
    method = "Method"
    month_tag = "Month"
    """
).strip()


def _write(tmp: str, shared: str, local: str | None = None) -> tuple[Path, Path]:
    shared_file = Path(tmp) / "config.shared.toml"
    local_file = Path(tmp) / "config.local.toml"
    shared_file.write_text(shared, encoding="utf-8")
    if local is not None:
        local_file.write_text(local, encoding="utf-8")
    return shared_file, local_file


def test_defaults_without_local_file() -> None:
    shared = textwrap.dedent(
        """
        [store]
        backend = "memory"
        seed_file = "mocks/seed.json"
        """
    ).strip()

    with tempfile.TemporaryDirectory() as tmp:
        shared_file, local_file = _write(tmp, shared)

        config = load_runtime_config(shared_file, local_file)

    assert config.timezone == "Asia/Dubai"
    assert config.store.seed_file == "mocks/seed.json"
    assert config.feishu is None
    assert config.billing.cycle_days == 30
    assert config.billing.expiring_soon_days == 3
    assert config.billing.currency_label == "DHS"
    assert config.logging.file_path == "logs/tiffindesk.log"
    assert config.logging.max_size_bytes == 20 * 1024 * 1024


def test_load_and_merge_shared_local() -> None:
    shared = 'timezone = "Asia/Kolkata"\n\n[store]\nbackend = "bitable"\n\n' + FEISHU_SECTION
    local = textwrap.dedent(
        """
        [feishu]
        app_id = "id"
        app_secret = "secret"

        [billing]
        currency_label = "AED"
        """
    ).strip()

    with tempfile.TemporaryDirectory() as tmp:
        shared_file, local_file = _write(tmp, shared, local)

        config = load_runtime_config(shared_file, local_file)

    assert config.timezone == "Asia/Kolkata"
    assert config.store.backend == "bitable"
    assert config.feishu is not None
    assert config.feishu.app_id == "id"
    assert config.feishu.app_token == "app"
    assert config.feishu.tables.payments == "t4"
    assert config.billing.currency_label == "AED"
    assert config.billing.cycle_days == 30


def test_bitable_backend_requires_feishu_section() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        shared_file, local_file = _write(tmp, '[store]\nbackend = "bitable"\n')

        with pytest.raises(ConfigError):
            load_runtime_config(shared_file, local_file)


def test_duplicate_field_names_raise_error() -> None:
    shared = FEISHU_SECTION.replace('contact = "Contact"', 'contact = "Name"')
    local = '[feishu]\napp_id = "id"\napp_secret = "secret"\n'

    with tempfile.TemporaryDirectory() as tmp:
        shared_file, local_file = _write(tmp, shared, local)

        with pytest.raises(ConfigError):
            load_runtime_config(shared_file, local_file)


@pytest.mark.parametrize(
    "shared",
    [
        'timezone = "Mars/Phobos"\n',
        "[logging]\nmax_size_mb = 0\n",
        "[store]\npoll_interval_seconds = 0\n",
        '[store]\nbackend = "sqlite"\n',
        "[billing]\ncycle_days = 0\n",
        '[billing]\ncurrency_label = "  "\n',
    ],
)
def test_invalid_values_raise_error(shared: str) -> None:
    with tempfile.TemporaryDirectory() as tmp:
        shared_file, local_file = _write(tmp, shared)

        with pytest.raises(ConfigError):
            load_runtime_config(shared_file, local_file)


def test_missing_shared_file_raise_error() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        with pytest.raises(ConfigError):
            load_runtime_config(Path(tmp) / "missing.toml", Path(tmp) / "local.toml")


def test_project_sample_config_loads() -> None:
    root = Path(__file__).resolve().parents[1]

    config = load_runtime_config(root / "config.shared.toml", root / "does-not-exist.toml")

    assert config.store.backend == "memory"
    assert config.store.seed_file == "mocks/seed.json"
