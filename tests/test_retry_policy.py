from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from outbox_dispatcher.messaging.retry import DEAD_LETTER_PREFIX, RetryPolicy

NOW = datetime(2024, 1, 1, 12, 0, 0)


@pytest.mark.parametrize(
    ("attempts", "seconds"),
    [(1, 5), (2, 25), (3, 125), (4, 625)],
)
def test_backoff_grows_as_power_of_base(attempts: int, seconds: int) -> None:
    assert RetryPolicy().compute_backoff(attempts) == timedelta(seconds=seconds)


def test_backoff_unit_scales_delay() -> None:
    policy = RetryPolicy(unit_seconds=0.1)

    assert policy.compute_backoff(2) == timedelta(seconds=2.5)


def test_first_failure_schedules_retry_after_five_seconds() -> None:
    decision = RetryPolicy().on_failure(0, "boom", now=NOW)

    assert decision.dead_lettered is False
    assert decision.attempts == 1
    assert decision.next_attempt_at == NOW + timedelta(seconds=5)
    assert decision.error_message == "boom"


def test_fifth_failure_dead_letters_event() -> None:
    decision = RetryPolicy(max_attempts=5).on_failure(4, "still broken", now=NOW)

    assert decision.dead_lettered is True
    assert decision.attempts == 5
    assert decision.next_attempt_at is None
    assert decision.error_message == f"{DEAD_LETTER_PREFIX}still broken"


def test_is_exhausted_at_max_attempts() -> None:
    policy = RetryPolicy(max_attempts=3)

    assert policy.is_exhausted(2) is False
    assert policy.is_exhausted(3) is True


def test_jitter_only_extends_delay() -> None:
    high = RetryPolicy(jitter=0.5, rand=lambda: 1.0)
    low = RetryPolicy(jitter=0.5, rand=lambda: 0.0)

    assert high.compute_backoff(1) == timedelta(seconds=7.5)
    assert low.compute_backoff(1) == timedelta(seconds=5)
