"""Источник времени для outbox: наивный UTC, как и колонки DateTime в схеме."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock(Protocol):
    def now(self) -> datetime:
        """Текущее время в наивном UTC."""


class SystemClock:
    def now(self) -> datetime:
        return utcnow()


class FrozenClock:
    """
    Управляемые часы для детерминированных тестов и ручных прогонов.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or utcnow()

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta | float) -> datetime:
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        self._now += delta
        return self._now
