from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from typing import List, Optional, Tuple

from outbox_dispatcher.clock import Clock, SystemClock
from outbox_dispatcher.entity.jobs import JobStatus, QueueStats
from outbox_dispatcher.entity.outbox import (NewOutboxEvent, OutboxEvent,
                                             OutboxStats, PurgeResult)
from outbox_dispatcher.exceptions import (OutboxEventNotFoundError,
                                          ReplayNotAllowedError)
from outbox_dispatcher.infrastructure.persistence.uow import UnitOfWork
from outbox_dispatcher.logger import event_extra, logger


class OutboxUseCase:
    """
    Операции над outbox для продюсеров и операторов: запись событий,
    просмотр и повторный запуск dead-letter, статистика и очистка.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        *,
        max_attempts: int = 5,
        claim_timeout: float = 300.0,
        retention_days: int = 30,
        retention_batch_size: int = 1000,
        job_completed_retention_hours: float = 24.0,
        job_failed_retention_days: float = 7.0,
        clock: Optional[Clock] = None,
    ) -> None:
        """
        Хранит зависимости и параметры outbox
        """
        self._uow = uow
        self._max_attempts = max_attempts
        self._claim_timeout = timedelta(seconds=claim_timeout)
        self._retention_days = retention_days
        self._retention_batch_size = retention_batch_size
        self._job_completed_retention = timedelta(hours=job_completed_retention_hours)
        self._job_failed_retention = timedelta(days=job_failed_retention_days)
        self._clock: Clock = clock or SystemClock()

    async def publish_event(self, event: NewOutboxEvent) -> OutboxEvent:
        """
        Записывает событие отдельной транзакцией. Продюсеры, у которых уже
        открыт UnitOfWork, вызывают repositories.outbox.add_event напрямую.
        """
        async with self._uow.init() as repositories:
            return await repositories.outbox.add_event(event, now=self._clock.now())

    async def get_event(self, event_id: int) -> OutboxEvent:
        async with self._uow.init() as repositories:
            event = await repositories.outbox.get_event(event_id)
        if event is None:
            raise OutboxEventNotFoundError(event_id=event_id)
        return event

    async def list_dead_letters(self, limit: int = 100) -> List[OutboxEvent]:
        async with self._uow.init() as repositories:
            return await repositories.outbox.list_dead_letters(
                limit, max_attempts=self._max_attempts
            )

    async def replay_event(self, event_id: int) -> OutboxEvent:
        """
        Возвращает событие из dead-letter в очередь обработки.
        """
        now = self._clock.now()
        async with self._uow.init() as repositories:
            event = await repositories.outbox.get_event(event_id)
            if event is None:
                raise OutboxEventNotFoundError(event_id=event_id)
            if event.is_processed:
                raise ReplayNotAllowedError(event_id=event_id, reason="already processed")
            if not event.is_dead_lettered(self._max_attempts):
                raise ReplayNotAllowedError(event_id=event_id, reason="not dead-lettered")

            await repositories.outbox.replay(event_id, now=now)

        logger.info(
            "Replayed dead-lettered outbox event %s",
            event_id,
            extra=event_extra(event),
        )
        return replace(event, attempts=0, processing_at=None, next_attempt_at=now)

    async def get_stats(self) -> Tuple[OutboxStats, List[QueueStats]]:
        async with self._uow.init() as repositories:
            outbox_stats = await repositories.outbox.stats(
                now=self._clock.now(),
                max_attempts=self._max_attempts,
                claim_timeout=self._claim_timeout,
            )
            queue_stats = await repositories.jobs.stats()
        return outbox_stats, queue_stats

    async def purge_processed(self, retention_days: Optional[int] = None) -> PurgeResult:
        """
        Удаляет обработанные события старше срока хранения, а также
        завершённые и упавшие записи реестра заданий по их собственным срокам.
        """
        days = self._retention_days if retention_days is None else retention_days
        now = self._clock.now()
        async with self._uow.init() as repositories:
            deleted_events = await repositories.outbox.purge_processed(
                now - timedelta(days=days), batch_size=self._retention_batch_size
            )
            deleted_jobs = await repositories.jobs.purge(
                now - self._job_completed_retention,
                [JobStatus.COMPLETED],
                batch_size=self._retention_batch_size,
            )
            deleted_jobs += await repositories.jobs.purge(
                now - self._job_failed_retention,
                [JobStatus.FAILED],
                batch_size=self._retention_batch_size,
            )
        logger.info(
            "Purged %d processed outbox events and %d finished jobs",
            deleted_events,
            deleted_jobs,
            extra={"retention_days": days},
        )
        return PurgeResult(
            deleted_events=deleted_events,
            deleted_jobs=deleted_jobs,
            retention_days=days,
        )
