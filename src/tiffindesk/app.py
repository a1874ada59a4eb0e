from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from pathlib import Path
import re
import sys
import time as mono_time

from apscheduler.schedulers.background import BackgroundScheduler
import typer
from loguru import logger

from tiffindesk.adapters.feishu_clients import BitableAdapter, FeishuApiError, FeishuFactory, FieldMappingResolver
from tiffindesk.config import ConfigError, RuntimeConfig, load_runtime_config
from tiffindesk.domain.calendar import WeekIdError, day_name_of, next_week_id, parse_week_id, short_day
from tiffindesk.domain.menu import MEAL_FIELDS, WeekMenuDraft
from tiffindesk.domain.models import DAYS, DayName, Meal, MealSlot
from tiffindesk.services.bitable_repository import BitableRepository
from tiffindesk.services.kitchen import AttendanceError, DashboardSummary, KitchenService
from tiffindesk.services.menu_planner import MenuPlanner
from tiffindesk.services.payments import PaymentError, PaymentLedger
from tiffindesk.services.repositories import InMemoryRepository, RepositoryError, TiffinRepository


class LogLevelOption(StrEnum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class MealOption(StrEnum):
    LUNCH = "lunch"
    DINNER = "dinner"


_MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

DEFAULT_SHARED_CONFIG = Path("config.shared.toml")
DEFAULT_LOCAL_CONFIG = Path("config.local.toml")


@dataclass(slots=True)
class ConfigPaths:
    shared: Path = DEFAULT_SHARED_CONFIG
    local: Path = DEFAULT_LOCAL_CONFIG


def build_repository(
    config: RuntimeConfig,
    *,
    now_provider: Callable[[], datetime] | None = None,
) -> TiffinRepository:
    if config.store.backend == "bitable":
        if config.feishu is None:
            raise ConfigError("store.backend = 'bitable' requires a [feishu] section")
        client = FeishuFactory.build_client(config.feishu)
        bitable = BitableAdapter(client=client, app_token=config.feishu.app_token)
        mappings = FieldMappingResolver(bitable).resolve(config.feishu)
        return BitableRepository(timezone=config.tz, bitable=bitable, mappings=mappings, now_provider=now_provider)

    state_file = Path(config.store.state_file) if config.store.state_file else None
    if state_file is None:
        logger.warning("memory store without state_file: changes last only until the process exits")
    elif state_file.exists():
        return InMemoryRepository.from_seed_file(
            state_file,
            timezone=config.tz,
            now_provider=now_provider,
            state_file=state_file,
        )

    if config.store.seed_file:
        seed_file = Path(config.store.seed_file)
        if not seed_file.exists():
            raise ConfigError(f"seed file not found: {seed_file}")
        return InMemoryRepository.from_seed_file(
            seed_file,
            timezone=config.tz,
            now_provider=now_provider,
            state_file=state_file,
        )
    logger.warning("memory store without seed file: starting empty")
    return InMemoryRepository(timezone=config.tz, now_provider=now_provider, state_file=state_file)


class TiffinApplication:
    def __init__(self, *, now_provider: Callable[[], datetime] | None = None) -> None:
        self._config: RuntimeConfig | None = None
        self._repository: TiffinRepository | None = None
        self._kitchen: KitchenService | None = None
        self._menu: MenuPlanner | None = None
        self._ledger: PaymentLedger | None = None
        self._now_provider = now_provider

    def bootstrap(
        self,
        runtime_config: RuntimeConfig | None = None,
        *,
        repository: TiffinRepository | None = None,
    ) -> None:
        self._config = runtime_config or load_runtime_config()
        self._repository = repository or build_repository(self._config, now_provider=self._now_provider)
        self._kitchen = KitchenService(config=self._config, repository=self._repository, now_provider=self._now_provider)
        self._menu = MenuPlanner(config=self._config, repository=self._repository, now_provider=self._now_provider)
        self._ledger = PaymentLedger(config=self._config, repository=self._repository, now_provider=self._now_provider)
        logger.info("store ready: backend={}", self._config.store.backend)

    @property
    def config(self) -> RuntimeConfig:
        if self._config is None:
            raise RuntimeError("application not bootstrapped")
        return self._config

    @property
    def kitchen(self) -> KitchenService:
        if self._kitchen is None:
            raise RuntimeError("application not bootstrapped")
        return self._kitchen

    @property
    def menu(self) -> MenuPlanner:
        if self._menu is None:
            raise RuntimeError("application not bootstrapped")
        return self._menu

    @property
    def ledger(self) -> PaymentLedger:
        if self._ledger is None:
            raise RuntimeError("application not bootstrapped")
        return self._ledger

    def watch(self, on_change: Callable[[DashboardSummary], None]) -> Callable[[], None]:
        """Recompute the dashboard on every store change; returns a stop handle."""
        if self._repository is None or self._config is None:
            raise RuntimeError("application not bootstrapped")

        def listener() -> None:
            on_change(self.kitchen.dashboard())

        unsubscribe = self._repository.subscribe(listener)
        listener()

        scheduler: BackgroundScheduler | None = None
        repository = self._repository
        if isinstance(repository, BitableRepository):
            scheduler = BackgroundScheduler(timezone=self._config.tz)
            scheduler.add_job(
                self._poll_store,
                trigger="interval",
                seconds=self._config.store.poll_interval_seconds,
                args=[repository],
                id="store_poll",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            logger.info("store polling started: every {}s", self._config.store.poll_interval_seconds)
        else:
            logger.info("watching in-process store changes")

        def stop() -> None:
            unsubscribe()
            if scheduler is not None:
                scheduler.shutdown(wait=False)

        return stop

    @staticmethod
    def _poll_store(repository: BitableRepository) -> None:
        try:
            repository.poll_changes()
        except Exception:
            logger.exception("store poll failed")


def configure_logging(
    *,
    level: LogLevelOption | str = LogLevelOption.INFO,
    file_path: str | None = None,
    file_max_size_bytes: int | None = None,
) -> None:
    resolved_level = level.value.upper() if isinstance(level, LogLevelOption) else str(level).upper()
    logger.remove()
    common_options = {
        "level": resolved_level,
        "format": "{time:YYYY-MM-DD HH:mm:ss.SSS} {level} [{name}] {message}",
    }
    logger.add(
        sys.__stderr__,
        **common_options,
    )
    if file_path:
        target = Path(file_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        file_options = dict(common_options)
        file_options["encoding"] = "utf-8"
        if file_max_size_bytes is not None and file_max_size_bytes > 0:
            file_options["rotation"] = file_max_size_bytes
        logger.add(str(target), **file_options)


def _parse_cli_date(raw_value: str | None, option_name: str) -> date | None:
    if raw_value is None:
        return None
    try:
        return datetime.strptime(raw_value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise typer.BadParameter(f"{option_name} must be YYYY-MM-DD") from exc


def _parse_cli_week(raw_value: str | None, option_name: str) -> str | None:
    if raw_value is None:
        return None
    try:
        parse_week_id(raw_value)
    except WeekIdError as exc:
        raise typer.BadParameter(f"{option_name} must be YYYY-Www ({exc})") from exc
    return raw_value.strip()


def _parse_cli_month(raw_value: str | None, option_name: str) -> str | None:
    if raw_value is None:
        return None
    if not _MONTH_PATTERN.match(raw_value):
        raise typer.BadParameter(f"{option_name} must be YYYY-MM")
    return raw_value


def _parse_cli_day(raw_value: str, option_name: str) -> DayName:
    text = raw_value.strip().lower()
    for day in DAYS:
        if text in {day.value.lower(), short_day(day).lower()}:
            return day
    raise typer.BadParameter(f"{option_name} must be a weekday name such as Monday or Mon")


def _parse_cli_amount(raw_value: str | None, option_name: str) -> Decimal | None:
    if raw_value is None:
        return None
    try:
        amount = Decimal(raw_value)
    except InvalidOperation as exc:
        raise typer.BadParameter(f"{option_name} must be a number") from exc
    if not amount.is_finite() or amount <= 0:
        raise typer.BadParameter(f"{option_name} must be a positive number")
    return amount


def _parse_cli_bool(raw_value: str, option_name: str) -> bool:
    text = raw_value.strip().lower()
    if text in {"true", "yes", "y", "on", "1"}:
        return True
    if text in {"false", "no", "n", "off", "0"}:
        return False
    raise typer.BadParameter(f"{option_name} must be true or false")


def apply_menu_edit(draft: WeekMenuDraft, day: DayName, meal: Meal, field_path: str, raw_value: str) -> None:
    if field_path in {"rice.enabled", "rice.type"}:
        rice_field = field_path.split(".", 1)[1]
        value: object = _parse_cli_bool(raw_value, "VALUE") if rice_field == "enabled" else raw_value
        draft.update_rice_field(day, meal, rice_field, value)
        return
    if field_path not in MEAL_FIELDS - {"rice"}:
        raise typer.BadParameter("FIELD must be one of main, roti, extra, rice.enabled, rice.type")
    value = _parse_cli_bool(raw_value, "VALUE") if field_path == "roti" else raw_value
    draft.update_field(day, meal, field_path, value)


def format_slot(slot: MealSlot) -> str:
    parts = [slot.main or "(not set)", "roti" if slot.roti else "no roti"]
    parts.append(f"rice ({slot.rice.type or 'plain'})" if slot.rice.enabled else "no rice")
    if slot.extra:
        parts.append(f"extra: {slot.extra}")
    return ", ".join(parts)


def format_dashboard(summary: DashboardSummary) -> list[str]:
    lines = [
        f"{summary.target_date.isoformat()} ({day_name_of(summary.target_date).value})",
        f"active customers: {summary.active_count} | payments due: {summary.payments_due}",
        (
            f"lunch: {summary.counts.lunch} | dinner: {summary.counts.dinner} | "
            f"total plates: {summary.counts.total}"
        ),
        f"lunch menu: {format_slot(summary.menu.lunch)}",
        f"dinner menu: {format_slot(summary.menu.dinner)}",
    ]
    for override in summary.orphan_overrides:
        lines.append(f"warning: attendance override for unknown customer {override.customer_id}")
    return lines


def _print_week(draft: WeekMenuDraft) -> None:
    typer.echo(f"week {draft.week_id}")
    for day in DAYS:
        marker = "*" if day in draft.dirty else " "
        menu = draft.day(day)
        typer.echo(f"{marker}{short_day(day)} {draft.date_for(day).isoformat()}")
        typer.echo(f"    lunch:  {format_slot(menu.lunch)}")
        typer.echo(f"    dinner: {format_slot(menu.dinner)}")


def _commit_or_exit(app: TiffinApplication, draft: WeekMenuDraft) -> None:
    result = app.menu.commit_dirty_days(draft)
    if result.saved:
        typer.echo(f"saved: {', '.join(short_day(day) for day in result.saved)}")
    if not result.ok:
        typer.echo(f"failed: {', '.join(short_day(day) for day in result.failed)}")
        raise typer.Exit(code=1)


def _config_paths(ctx: typer.Context) -> ConfigPaths:
    paths = ctx.find_object(ConfigPaths)
    return paths or ConfigPaths()


def _load_runtime_config_or_exit(ctx: typer.Context) -> RuntimeConfig:
    paths = _config_paths(ctx)
    try:
        return load_runtime_config(paths.shared, paths.local)
    except ConfigError as exc:
        logger.error(str(exc))
        raise typer.Exit(code=1) from exc


def _bootstrap_application(ctx: typer.Context, *, runtime_config: RuntimeConfig | None = None) -> TiffinApplication:
    app = TiffinApplication()
    try:
        app.bootstrap(runtime_config=runtime_config or _load_runtime_config_or_exit(ctx))
    except (ConfigError, FeishuApiError) as exc:
        logger.error(str(exc))
        raise typer.Exit(code=1) from exc
    return app


cli = typer.Typer(help="tiffindesk: customers, attendance, menu and payments for a tiffin kitchen", add_completion=False)
attendance_cli = typer.Typer(help="Daily attendance overrides.", no_args_is_help=True)
menu_cli = typer.Typer(help="Weekly menu planning.", no_args_is_help=True)
payment_cli = typer.Typer(help="Payments and finance.", no_args_is_help=True)
cli.add_typer(attendance_cli, name="attendance")
cli.add_typer(menu_cli, name="menu")
cli.add_typer(payment_cli, name="payment")


@cli.callback(invoke_without_command=True)
def root_callback(
    ctx: typer.Context,
    log_level: LogLevelOption = typer.Option(
        LogLevelOption.INFO,
        "--log-level",
        case_sensitive=False,
        help="Log level for console output.",
    ),
    config_path: Path = typer.Option(DEFAULT_SHARED_CONFIG, "--config", help="Shared config file (required)."),
    local_config_path: Path = typer.Option(
        DEFAULT_LOCAL_CONFIG,
        "--local-config",
        help="Local overrides and secrets (optional).",
    ),
) -> None:
    configure_logging(level=log_level)
    ctx.obj = ConfigPaths(shared=config_path, local=local_config_path)
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


@cli.command("check", help="Validate config and store access (field mapping for Bitable).")
def check_command(ctx: typer.Context) -> None:
    _bootstrap_application(ctx)
    logger.info("check passed")


@cli.command("today", help="Dashboard: active customers, payments due, plates to cook and today's menu.")
def today_command(
    ctx: typer.Context,
    target_date: str | None = typer.Option(None, "--date", help="Business date YYYY-MM-DD, default today."),
) -> None:
    parsed_date = _parse_cli_date(target_date, "--date")
    app = _bootstrap_application(ctx)
    for line in format_dashboard(app.kitchen.dashboard(target_date=parsed_date)):
        typer.echo(line)


@cli.command("customers", help="Customers with status, days left and amount due.")
def customers_command(
    ctx: typer.Context,
    include_inactive: bool = typer.Option(False, "--all", help="Include customers flagged inactive."),
) -> None:
    app = _bootstrap_application(ctx)
    currency = app.config.billing.currency_label
    snapshots = app.kitchen.customers(include_inactive=include_inactive)
    if not snapshots:
        typer.echo("no customers")
        return
    for item in snapshots:
        typer.echo(
            f"{item.customer.customer_id} {item.customer.name} [{item.status.value}] "
            f"days_left={item.days_left} due={currency} {item.due}"
        )


@cli.command("forecast", help="Plates per day for a week.")
def forecast_command(
    ctx: typer.Context,
    week: str | None = typer.Option(None, "--week", help="Week id YYYY-Www, default current week."),
) -> None:
    parsed_week = _parse_cli_week(week, "--week")
    app = _bootstrap_application(ctx)
    forecast = app.kitchen.week_forecast(parsed_week)
    for day, counts in forecast.items():
        typer.echo(f"{short_day(day)} lunch={counts.lunch} dinner={counts.dinner} total={counts.total}")


@cli.command("roster", help="Customers counted for a meal on a date.")
def roster_command(
    ctx: typer.Context,
    meal: MealOption = typer.Option(..., "--meal", case_sensitive=False, help="lunch or dinner."),
    target_date: str | None = typer.Option(None, "--date", help="Business date YYYY-MM-DD, default today."),
) -> None:
    parsed_date = _parse_cli_date(target_date, "--date")
    app = _bootstrap_application(ctx)
    customers = app.kitchen.roster(Meal(meal.value), target_date=parsed_date)
    typer.echo(f"{meal.value}: {len(customers)}")
    for customer in customers:
        typer.echo(f"  {customer.customer_id} {customer.name}")


@cli.command("watch", help="Print the dashboard again whenever the store changes (Ctrl-C to stop).")
def watch_command(
    ctx: typer.Context,
    log_level: LogLevelOption = typer.Option(
        LogLevelOption.INFO,
        "--log-level",
        case_sensitive=False,
        help="Log level for console and file output.",
    ),
) -> None:
    runtime_config = _load_runtime_config_or_exit(ctx)
    configure_logging(
        level=log_level,
        file_path=runtime_config.logging.file_path,
        file_max_size_bytes=runtime_config.logging.max_size_bytes,
    )
    app = _bootstrap_application(ctx, runtime_config=runtime_config)

    def show(summary: DashboardSummary) -> None:
        typer.echo("\n".join(format_dashboard(summary)))
        typer.echo("")

    stop = app.watch(show)
    try:
        while True:
            mono_time.sleep(1)
    except KeyboardInterrupt:
        logger.info("watch stopped")
    finally:
        stop()


@attendance_cli.command("toggle", help="Flip one meal for one customer on a date (opt out or back in).")
def attendance_toggle_command(
    ctx: typer.Context,
    customer_id: str = typer.Argument(..., help="Customer id."),
    meal: MealOption = typer.Option(..., "--meal", case_sensitive=False, help="lunch or dinner."),
    target_date: str | None = typer.Option(None, "--date", help="Business date YYYY-MM-DD, default today."),
) -> None:
    parsed_date = _parse_cli_date(target_date, "--date")
    app = _bootstrap_application(ctx)
    try:
        override = app.kitchen.toggle_attendance(customer_id, Meal(meal.value), target_date=parsed_date)
    except AttendanceError as exc:
        logger.error(str(exc))
        raise typer.Exit(code=1) from exc
    except (RepositoryError, FeishuApiError) as exc:
        raise typer.Exit(code=1) from exc
    typer.echo(
        f"{override.customer_id} {override.target_date.isoformat()} "
        f"lunch={'yes' if override.lunch else 'no'} dinner={'yes' if override.dinner else 'no'}"
    )


@menu_cli.command("show", help="Show the week's menu.")
def menu_show_command(
    ctx: typer.Context,
    week: str | None = typer.Option(None, "--week", help="Week id YYYY-Www, default current week."),
    following: bool = typer.Option(False, "--next", help="Show the week after --week (or after the current week)."),
) -> None:
    parsed_week = _parse_cli_week(week, "--week")
    app = _bootstrap_application(ctx)
    target_week = parsed_week or app.menu.current_week_id()
    if following:
        target_week = next_week_id(target_week)
    _print_week(app.menu.load_week(target_week))


@menu_cli.command("set", help="Set one field of a meal slot: main, roti, extra, rice.enabled or rice.type.")
def menu_set_command(
    ctx: typer.Context,
    day: str = typer.Argument(..., help="Weekday, e.g. Monday or Mon."),
    meal: MealOption = typer.Argument(..., case_sensitive=False, help="lunch or dinner."),
    field_path: str = typer.Argument(..., metavar="FIELD"),
    value: str = typer.Argument(...),
    week: str | None = typer.Option(None, "--week", help="Week id YYYY-Www, default current week."),
) -> None:
    parsed_day = _parse_cli_day(day, "DAY")
    parsed_week = _parse_cli_week(week, "--week")
    app = _bootstrap_application(ctx)
    draft = app.menu.load_week(parsed_week)
    apply_menu_edit(draft, parsed_day, Meal(meal.value), field_path, value)
    _commit_or_exit(app, draft)


@menu_cli.command("copy-day", help="Copy one day's menu to other days of the same week.")
def menu_copy_day_command(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Source weekday."),
    targets: list[str] = typer.Argument(..., help="Target weekdays."),
    week: str | None = typer.Option(None, "--week", help="Week id YYYY-Www, default current week."),
) -> None:
    source_day = _parse_cli_day(source, "SOURCE")
    target_days = [_parse_cli_day(item, "TARGETS") for item in targets]
    parsed_week = _parse_cli_week(week, "--week")
    app = _bootstrap_application(ctx)
    draft = app.menu.load_week(parsed_week)
    copied = app.menu.duplicate_day_to(draft, source_day, target_days)
    if not copied:
        typer.echo("nothing to copy")
        return
    _commit_or_exit(app, draft)


@menu_cli.command("copy-previous-week", help="Overlay last week's saved days onto this week.")
def menu_copy_previous_week_command(
    ctx: typer.Context,
    week: str | None = typer.Option(None, "--week", help="Week id YYYY-Www, default current week."),
) -> None:
    parsed_week = _parse_cli_week(week, "--week")
    app = _bootstrap_application(ctx)
    draft = app.menu.load_week(parsed_week)
    applied = app.menu.duplicate_previous_week(draft)
    if not applied:
        typer.echo("previous week has no saved menu")
        return
    _commit_or_exit(app, draft)


@payment_cli.command("record", help="Record a payment and extend the billing window by one cycle.")
def payment_record_command(
    ctx: typer.Context,
    customer_id: str = typer.Argument(..., help="Customer id."),
    amount: str | None = typer.Option(None, "--amount", help="Amount paid, default the monthly price."),
    method: str | None = typer.Option(None, "--method", help="Payment method, default from config."),
) -> None:
    parsed_amount = _parse_cli_amount(amount, "--amount")
    app = _bootstrap_application(ctx)
    try:
        receipt = app.ledger.record_payment(customer_id, amount=parsed_amount, method=method)
    except PaymentError as exc:
        logger.error(str(exc))
        raise typer.Exit(code=1) from exc
    currency = app.config.billing.currency_label
    typer.echo(
        f"{receipt.customer.name}: paid {currency} {receipt.payment.amount} via {receipt.payment.method}, "
        f"valid until {receipt.customer.end_date.isoformat()} (was {receipt.previous_end_date.isoformat()})"
    )


@payment_cli.command("summary", help="Finance summary for a month.")
def payment_summary_command(
    ctx: typer.Context,
    month: str | None = typer.Option(None, "--month", help="Month YYYY-MM, default current month."),
) -> None:
    parsed_month = _parse_cli_month(month, "--month")
    app = _bootstrap_application(ctx)
    summary = app.ledger.finance_summary(parsed_month)
    currency = app.config.billing.currency_label
    typer.echo(f"month {summary.month_tag}")
    typer.echo(
        f"expected={currency} {summary.expected} collected={currency} {summary.collected} "
        f"outstanding={currency} {summary.outstanding} rate={summary.collection_rate}%"
    )
    typer.echo(f"active customers={summary.active_count} orphan entries={summary.orphan_count}")
    for entry in summary.entries:
        record = entry.record
        flag = " [orphan]" if entry.is_orphan else ""
        typer.echo(
            f"  {record.payment_id} {record.paid_at.date().isoformat()} {record.customer_name} "
            f"{currency} {record.amount} {record.method}{flag}"
        )


@payment_cli.command("delete", help="Delete a ledger entry.")
def payment_delete_command(
    ctx: typer.Context,
    payment_id: str = typer.Argument(..., help="Payment id."),
) -> None:
    app = _bootstrap_application(ctx)
    try:
        app.ledger.delete_transaction(payment_id)
    except (RepositoryError, FeishuApiError) as exc:
        raise typer.Exit(code=1) from exc
    typer.echo(f"deleted {payment_id}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
