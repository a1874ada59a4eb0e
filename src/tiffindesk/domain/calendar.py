"""ISO-8601 week arithmetic.

Week ids look like ``2026-W08``: Monday-start weeks, week 1 is the week that
contains the year's first Thursday (equivalently, January 4).
"""

from __future__ import annotations

from datetime import date, timedelta
import math
import re

from .models import DAYS, DayName


_WEEK_ID_PATTERN = re.compile(r"^(\d{4})-W(\d{2})$")


class WeekIdError(ValueError):
    pass


def week_id(target: date) -> str:
    thursday = target + timedelta(days=3 - target.weekday())
    year_start = date(thursday.year, 1, 1)
    week = math.ceil(((thursday - year_start).days + 1) / 7)
    return f"{thursday.year}-W{week:02d}"


def parse_week_id(value: str) -> tuple[int, int]:
    match = _WEEK_ID_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise WeekIdError(f"invalid week id, expected YYYY-Www: {value!r}")
    year = int(match.group(1))
    week = int(match.group(2))
    if week < 1 or week > weeks_in_year(year):
        raise WeekIdError(f"week id out of range: {value} ({year} has {weeks_in_year(year)} weeks)")
    return year, week


def weeks_in_year(year: int) -> int:
    # December 28 always falls in the last ISO week of its year.
    return date(year, 12, 28).isocalendar().week


def dates_for_week(value: str) -> list[date]:
    year, week = parse_week_id(value)
    january_4 = date(year, 1, 4)
    week_one_monday = january_4 - timedelta(days=january_4.weekday())
    first = week_one_monday + timedelta(days=(week - 1) * 7)
    return [first + timedelta(days=index) for index in range(len(DAYS))]


def date_for_day_name(day_name: DayName | str, value: str) -> date:
    day = DayName(day_name)
    return dates_for_week(value)[DAYS.index(day)]


def previous_week_id(value: str) -> str:
    year, week = parse_week_id(value)
    if week > 1:
        return f"{year}-W{week - 1:02d}"
    return f"{year - 1}-W{weeks_in_year(year - 1):02d}"


def next_week_id(value: str) -> str:
    year, week = parse_week_id(value)
    if week < weeks_in_year(year):
        return f"{year}-W{week + 1:02d}"
    return f"{year + 1}-W01"


def today_day_name(today: date) -> DayName:
    return day_name_of(today)


def day_name_of(target: date) -> DayName:
    return DAYS[target.weekday()]


def short_day(day: DayName | str) -> str:
    return DayName(day).value[:3]
