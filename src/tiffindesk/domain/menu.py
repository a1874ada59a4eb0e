from __future__ import annotations

from collections.abc import Iterable, Mapping
import copy
from dataclasses import asdict, dataclass, field
from datetime import date
from enum import StrEnum
from typing import Any

from .calendar import date_for_day_name
from .models import DAYS, DayMenu, DayName, Meal, MealSlot, RiceSlot


MEAL_FIELDS = frozenset({"main", "roti", "rice", "extra"})
RICE_FIELDS = frozenset({"enabled", "type"})


class SlotDefault(StrEnum):
    MISSING_SLOT = "missing_slot"
    MAIN = "main"
    ROTI = "roti"
    RICE = "rice"
    LEGACY_RICE_STRING = "legacy_rice_string"
    EXTRA = "extra"
    LEGACY_SIDE = "legacy_side"


@dataclass(slots=True, frozen=True)
class SlotParse:
    slot: MealSlot
    defaults: frozenset[SlotDefault] = frozenset()

    @property
    def is_canonical(self) -> bool:
        return not self.defaults


def parse_meal_slot(raw: object) -> SlotParse:
    if not isinstance(raw, Mapping):
        return SlotParse(slot=MealSlot(), defaults=frozenset({SlotDefault.MISSING_SLOT}))

    defaults: set[SlotDefault] = set()

    main = raw.get("main")
    if not isinstance(main, str):
        main = ""
        defaults.add(SlotDefault.MAIN)

    roti = raw.get("roti")
    if not isinstance(roti, bool):
        roti = True
        defaults.add(SlotDefault.ROTI)

    raw_rice = raw.get("rice")
    if isinstance(raw_rice, Mapping) and "enabled" in raw_rice:
        rice_type = raw_rice.get("type")
        rice = RiceSlot(
            enabled=raw_rice.get("enabled") is True,
            type=rice_type if isinstance(rice_type, str) else "",
        )
    elif isinstance(raw_rice, str):
        rice = RiceSlot(enabled=False, type=raw_rice)
        defaults.add(SlotDefault.LEGACY_RICE_STRING)
    else:
        rice = RiceSlot()
        defaults.add(SlotDefault.RICE)

    extra = raw.get("extra")
    if not isinstance(extra, str):
        side = raw.get("side")
        if isinstance(side, str) and side:
            extra = side
            defaults.add(SlotDefault.LEGACY_SIDE)
        else:
            extra = ""
            defaults.add(SlotDefault.EXTRA)

    return SlotParse(
        slot=MealSlot(main=main, roti=roti, rice=rice, extra=extra),
        defaults=frozenset(defaults),
    )


def normalize_meal_slot(raw: object) -> MealSlot:
    return parse_meal_slot(raw).slot


def normalize_day_menu(raw: object) -> DayMenu:
    data = raw if isinstance(raw, Mapping) else {}
    return DayMenu(
        lunch=normalize_meal_slot(data.get(Meal.LUNCH.value)),
        dinner=normalize_meal_slot(data.get(Meal.DINNER.value)),
    )


def meal_slot_to_document(slot: MealSlot) -> dict[str, Any]:
    return asdict(slot)


def day_menu_to_document(menu: DayMenu) -> dict[str, Any]:
    return {
        Meal.LUNCH.value: meal_slot_to_document(menu.lunch),
        Meal.DINNER.value: meal_slot_to_document(menu.dinner),
    }


@dataclass(slots=True)
class WeekMenuDraft:
    """In-memory week menu being edited, plus the days still waiting to be saved."""

    week_id: str
    days: dict[DayName, DayMenu] = field(default_factory=dict)
    dirty: set[DayName] = field(default_factory=set)

    def day(self, day: DayName | str) -> DayMenu:
        return self.days.get(DayName(day)) or DayMenu()

    def date_for(self, day: DayName | str) -> date:
        return date_for_day_name(day, self.week_id)

    def update_field(self, day: DayName | str, meal: Meal | str, field_name: str, value: Any) -> None:
        day_key = DayName(day)
        meal_key = Meal(meal)
        if field_name not in MEAL_FIELDS:
            raise ValueError(f"unknown meal field: {field_name}")
        _check_field_value(field_name, value)

        menu = copy.deepcopy(self.day(day_key))
        slot = menu.slot(meal_key)
        setattr(slot, field_name, copy.deepcopy(value))
        self.days[day_key] = menu
        self.dirty.add(day_key)

    def update_rice_field(self, day: DayName | str, meal: Meal | str, field_name: str, value: Any) -> None:
        day_key = DayName(day)
        meal_key = Meal(meal)
        if field_name not in RICE_FIELDS:
            raise ValueError(f"unknown rice field: {field_name}")
        if field_name == "enabled" and not isinstance(value, bool):
            raise TypeError("rice.enabled must be a bool")
        if field_name == "type" and not isinstance(value, str):
            raise TypeError("rice.type must be a str")

        menu = copy.deepcopy(self.day(day_key))
        setattr(menu.slot(meal_key).rice, field_name, value)
        self.days[day_key] = menu
        self.dirty.add(day_key)

    def duplicate_day_to(self, source_day: DayName | str, target_days: Iterable[DayName | str]) -> set[DayName]:
        source_key = DayName(source_day)
        source_menu = self.day(source_key)
        copied: set[DayName] = set()
        for target in target_days:
            target_key = DayName(target)
            if target_key == source_key:
                continue
            self.days[target_key] = copy.deepcopy(source_menu)
            copied.add(target_key)
        self.dirty |= copied
        return copied

    def overlay(self, menus: Mapping[DayName, DayMenu]) -> set[DayName]:
        applied: set[DayName] = set()
        for day, menu in menus.items():
            day_key = DayName(day)
            self.days[day_key] = copy.deepcopy(menu)
            applied.add(day_key)
        self.dirty |= applied
        return applied

    def mark_clean(self, day: DayName | str) -> None:
        self.dirty.discard(DayName(day))

    def ordered_dirty_days(self) -> list[DayName]:
        return [day for day in DAYS if day in self.dirty]


def _check_field_value(field_name: str, value: Any) -> None:
    if field_name in {"main", "extra"} and not isinstance(value, str):
        raise TypeError(f"{field_name} must be a str")
    if field_name == "roti" and not isinstance(value, bool):
        raise TypeError("roti must be a bool")
    if field_name == "rice" and not isinstance(value, RiceSlot):
        raise TypeError("rice must be a RiceSlot")
