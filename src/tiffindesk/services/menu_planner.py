from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger

from tiffindesk.config import RuntimeConfig
from tiffindesk.domain.calendar import dates_for_week, previous_week_id, week_id
from tiffindesk.domain.menu import WeekMenuDraft
from tiffindesk.domain.models import DAYS, DayMenu, DayName
from tiffindesk.services.clock import Clock
from tiffindesk.services.repositories import TiffinRepository


@dataclass(slots=True)
class CommitResult:
    saved: list[DayName] = field(default_factory=list)
    failed: list[DayName] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class MenuPlanner:
    def __init__(
        self,
        *,
        config: RuntimeConfig,
        repository: TiffinRepository,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._repository = repository
        self._clock = Clock(config.tz, now_provider)

    def current_week_id(self) -> str:
        return week_id(self._clock.today())

    def load_week(self, target_week: str | None = None) -> WeekMenuDraft:
        resolved_week = target_week or self.current_week_id()
        draft = WeekMenuDraft(week_id=resolved_week)
        for day, target_date in zip(DAYS, dates_for_week(resolved_week)):
            draft.days[day] = self._repository.get_day_menu(target_date) or DayMenu()
        return draft

    def commit_dirty_days(self, draft: WeekMenuDraft) -> CommitResult:
        """Write every dirty day on its own; failed days stay dirty for a retry."""
        result = CommitResult()
        updated_at = self._clock.now()
        for day in draft.ordered_dirty_days():
            target_date = draft.date_for(day)
            try:
                self._repository.save_day_menu(target_date, draft.day(day), updated_at=updated_at)
            except Exception:
                logger.exception("menu.commit: save failed, week={} day={} date={}", draft.week_id, day.value, target_date)
                result.failed.append(day)
                continue
            draft.mark_clean(day)
            result.saved.append(day)

        logger.info(
            "menu.commit: week={} saved={} failed={}",
            draft.week_id,
            ",".join(day.value for day in result.saved) or "-",
            ",".join(day.value for day in result.failed) or "-",
        )
        return result

    def duplicate_day_to(
        self,
        draft: WeekMenuDraft,
        source_day: DayName | str,
        target_days: Iterable[DayName | str],
    ) -> set[DayName]:
        copied = draft.duplicate_day_to(source_day, target_days)
        logger.info(
            "menu.duplicate_day: week={} source={} targets={}",
            draft.week_id,
            DayName(source_day).value,
            ",".join(day.value for day in DAYS if day in copied) or "-",
        )
        return copied

    def duplicate_previous_week(self, draft: WeekMenuDraft) -> set[DayName]:
        source_week = previous_week_id(draft.week_id)
        found: dict[DayName, DayMenu] = {}
        for day, target_date in zip(DAYS, dates_for_week(source_week)):
            menu = self._repository.get_day_menu(target_date)
            if menu is not None:
                found[day] = menu

        applied = draft.overlay(found)
        logger.info(
            "menu.duplicate_week: source={} target={} days={}",
            source_week,
            draft.week_id,
            len(applied),
        )
        return applied
