from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime
from zoneinfo import ZoneInfo


class Clock:
    """Business-timezone clock; ``now_provider`` lets the CLI and tests pin "now"."""

    def __init__(self, timezone: ZoneInfo, now_provider: Callable[[], datetime] | None = None) -> None:
        self.timezone = timezone
        self._now_provider = now_provider

    def now(self) -> datetime:
        if self._now_provider is None:
            return datetime.now(self.timezone)
        current = self._now_provider()
        if current.tzinfo is None:
            return current.replace(tzinfo=self.timezone)
        return current.astimezone(self.timezone)

    def today(self) -> date:
        return self.now().date()
