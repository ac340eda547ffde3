"""Экспоненциальный backoff и порог dead-letter для событий outbox."""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

DEAD_LETTER_PREFIX = "Max attempts exceeded. Last error: "


@dataclass(slots=True)
class RetryDecision:
    attempts: int
    dead_lettered: bool
    next_attempt_at: datetime | None
    error_message: str


@dataclass(slots=True)
class RetryPolicy:
    """
    delay = base ** attempts * unit: 5s, 25s, 125s ... при base=5, unit=1s.
    Ограничена только max_attempts. jitter: доля случайного разброса (0 = выкл).
    """

    base: float = 5.0
    unit_seconds: float = 1.0
    max_attempts: int = 5
    jitter: float = 0.0
    rand: Callable[[], float] = field(default=random.random, repr=False)

    def compute_backoff(self, attempts: int) -> timedelta:
        seconds = (self.base ** attempts) * self.unit_seconds
        if self.jitter > 0:
            seconds += seconds * self.jitter * self.rand()
        return timedelta(seconds=seconds)

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def on_failure(self, attempts: int, error: str, *, now: datetime) -> RetryDecision:
        """
        Решение после неудачной попытки; attempts: значение до неё.
        """
        new_attempts = attempts + 1
        if self.is_exhausted(new_attempts):
            return RetryDecision(
                attempts=new_attempts,
                dead_lettered=True,
                next_attempt_at=None,
                error_message=f"{DEAD_LETTER_PREFIX}{error}",
            )
        return RetryDecision(
            attempts=new_attempts,
            dead_lettered=False,
            next_attempt_at=now + self.compute_backoff(new_attempts),
            error_message=error,
        )
