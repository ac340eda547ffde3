from __future__ import annotations

import logging
import os
import sys
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable

import pytest
import pytest_asyncio
from dependency_injector import providers
from fastapi.testclient import TestClient

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("LOG_FILE", "")

from outbox_dispatcher.clock import FrozenClock
from outbox_dispatcher.entity.jobs import Job, QueueStats
from outbox_dispatcher.entity.outbox import (NewOutboxEvent, OutboxEvent,
                                             OutboxStats, PurgeResult)
from outbox_dispatcher.exceptions import (OutboxEventNotFoundError,
                                          ReplayNotAllowedError)
from outbox_dispatcher.infrastructure.persistence.db import Database
from outbox_dispatcher.infrastructure.persistence.repositories.outbox import \
    OutboxRepository
from outbox_dispatcher.logger import logger as app_logger
from outbox_dispatcher.main import create_app
from outbox_dispatcher.messaging.enqueuer import IdempotentJobEnqueuer

START = datetime(2024, 1, 1, 12, 0, 0)


class InMemoryJobTransport:
    """
    Транспорт заданий без брокера: складывает опубликованные задания в список.
    """

    def __init__(self) -> None:
        self.published: list[Job] = []
        self.fail_with: Exception | None = None

    async def publish(self, job: Job) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.published.append(job)

    def jobs_in(self, queue: str) -> list[Job]:
        return [job for job in self.published if job.queue == queue]


def build_event(**overrides: Any) -> OutboxEvent:
    values: dict[str, Any] = {
        "id": 1,
        "aggregate_type": "document",
        "aggregate_id": "d1",
        "event_type": "document.uploaded",
        "payload": {},
        "created_at": START,
        "processed_at": None,
        "processing_at": None,
        "attempts": 0,
        "next_attempt_at": START,
        "error_message": None,
    }
    values.update(overrides)
    return OutboxEvent(**values)


class FakeOutboxUseCase:
    """
    Заглушка usecase для тестов обработчиков API без базы данных.
    """

    def __init__(self, max_attempts: int = 5, retention_days: int = 30) -> None:
        self.max_attempts = max_attempts
        self.retention_days = retention_days
        self.events: dict[int, OutboxEvent] = {}
        self.queue_stats: list[QueueStats] = []
        self.purge_calls: list[int | None] = []
        self.purge_result = 0
        self.purged_jobs = 0

    def add(self, event: OutboxEvent) -> OutboxEvent:
        self.events[event.id] = event
        return event

    async def get_event(self, event_id: int) -> OutboxEvent:
        event = self.events.get(event_id)
        if event is None:
            raise OutboxEventNotFoundError(event_id=event_id)
        return event

    async def list_dead_letters(self, limit: int = 100) -> list[OutboxEvent]:
        dead = [e for e in self.events.values() if e.is_dead_lettered(self.max_attempts)]
        return dead[:limit]

    async def replay_event(self, event_id: int) -> OutboxEvent:
        event = await self.get_event(event_id)
        if event.is_processed:
            raise ReplayNotAllowedError(event_id=event_id, reason="already processed")
        if not event.is_dead_lettered(self.max_attempts):
            raise ReplayNotAllowedError(event_id=event_id, reason="not dead-lettered")
        replayed = replace(event, attempts=0, processing_at=None)
        self.events[event_id] = replayed
        return replayed

    async def get_stats(self) -> tuple[OutboxStats, list[QueueStats]]:
        events = list(self.events.values())
        processed = sum(1 for e in events if e.is_processed)
        dead = sum(1 for e in events if e.is_dead_lettered(self.max_attempts))
        stats = OutboxStats(
            total=len(events),
            processed=processed,
            pending=len(events) - processed - dead,
            in_flight=sum(1 for e in events if e.processing_at and not e.is_processed),
            dead_lettered=dead,
        )
        return stats, self.queue_stats

    async def purge_processed(self, retention_days: int | None = None) -> PurgeResult:
        self.purge_calls.append(retention_days)
        return PurgeResult(
            deleted_events=self.purge_result,
            deleted_jobs=self.purged_jobs,
            retention_days=self.retention_days if retention_days is None else retention_days,
        )


@pytest.fixture()
def make_event() -> Callable[..., OutboxEvent]:
    return build_event


@pytest.fixture()
def fake_outbox_usecase() -> FakeOutboxUseCase:
    return FakeOutboxUseCase()


@pytest.fixture()
def api_client(fake_outbox_usecase: FakeOutboxUseCase) -> TestClient:
    app = create_app()
    app.container.usecase.outbox_usecase.override(providers.Object(fake_outbox_usecase))

    with TestClient(app) as client:
        yield client

    app.container.usecase.outbox_usecase.reset_override()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest_asyncio.fixture
async def db(tmp_path) -> Database:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'outbox.db'}")
    await database.create_schema()
    yield database
    await database.dispose()


@pytest.fixture()
def transport() -> InMemoryJobTransport:
    return InMemoryJobTransport()


@pytest.fixture()
def enqueuer(db: Database, transport: InMemoryJobTransport) -> IdempotentJobEnqueuer:
    return IdempotentJobEnqueuer(db=db, transport=transport)


@pytest.fixture()
def add_event(db: Database, clock: FrozenClock):
    """
    Записывает событие в outbox с временем из FrozenClock.
    """

    async def _add(
        event_type: str,
        payload: dict[str, Any] | None = None,
        *,
        aggregate_type: str = "document",
        aggregate_id: str = "agg-1",
        at: timedelta | None = None,
    ) -> OutboxEvent:
        now = clock.now() + (at or timedelta())
        async with db.connection() as session:
            return await OutboxRepository(session).add_event(
                NewOutboxEvent(
                    aggregate_type=aggregate_type,
                    aggregate_id=aggregate_id,
                    event_type=event_type,
                    payload=payload or {},
                ),
                now=now,
            )

    return _add


@pytest.fixture()
def load_event(db: Database):
    async def _load(event_id: int) -> OutboxEvent:
        async with db.connection() as session:
            event = await OutboxRepository(session).get_event(event_id)
        assert event is not None
        return event

    return _load


@pytest.fixture()
def app_logs(caplog):
    """
    Логгер приложения не распространяет записи, поэтому caplog подключается напрямую.
    """
    app_logger.addHandler(caplog.handler)
    caplog.set_level(logging.DEBUG, logger=app_logger.name)
    yield caplog
    app_logger.removeHandler(caplog.handler)
