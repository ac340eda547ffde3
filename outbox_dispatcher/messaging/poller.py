from __future__ import annotations

import asyncio
import contextlib
from datetime import timedelta
from typing import List, Optional

from outbox_dispatcher.clock import Clock, SystemClock
from outbox_dispatcher.entity.outbox import DispatchOutcome, OutboxEvent
from outbox_dispatcher.exceptions import RepositoryError
from outbox_dispatcher.infrastructure.persistence.db import Database
from outbox_dispatcher.infrastructure.persistence.repositories.outbox import \
    OutboxRepository
from outbox_dispatcher.logger import event_extra, logger
from outbox_dispatcher.messaging.handlers import HandlerRegistry
from outbox_dispatcher.messaging.retry import RetryPolicy

MAX_ERROR_LENGTH = 1000


class OutboxPoller:
    """
    Периодически захватывает пачку событий outbox и раздаёт их обработчикам.

    Несколько экземпляров могут работать с одной таблицей одновременно:
    взаимное исключение обеспечивает только claim_batch. Обработчики
    выполняются вне транзакции захвата, а упавший воркер оставляет после
    себя лишь захват, который истечёт через claim_timeout.
    """

    def __init__(
        self,
        db: Database,
        registry: HandlerRegistry,
        retry_policy: RetryPolicy,
        *,
        batch_size: int = 100,
        poll_interval: float = 1.0,
        claim_timeout: float = 300.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self._db = db
        self._registry = registry
        self._retry = retry_policy
        self._batch_size = batch_size
        self._poll_interval = poll_interval
        self._claim_timeout = timedelta(seconds=claim_timeout)
        self._clock: Clock = clock or SystemClock()
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, *, run_immediately: bool = True) -> None:
        """
        Запускает цикл опроса фоновой задачей.
        """
        if self.is_running:
            logger.info("Outbox poller already running")
            return

        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(run_immediately))
        logger.info(
            "Outbox poller started",
            extra={
                "batch_size": self._batch_size,
                "poll_interval": self._poll_interval,
                "max_attempts": self._retry.max_attempts,
            },
        )

    async def stop(self) -> None:
        """
        Отменяет ожидание следующего тика и дожидается текущей пачки.
        """
        if self._task is None:
            return

        self._stopping.set()
        task, self._task = self._task, None
        await task
        logger.info("Outbox poller stopped")

    async def run_once(self) -> int:
        """
        Один цикл захвата и обработки.
        :return: количество захваченных событий.
        """
        events = await self._claim()
        if not events:
            return 0

        logger.info("Processing %d outbox events", len(events))
        for event in events:
            await self._process_event(event)
        return len(events)

    async def _loop(self, run_immediately: bool) -> None:
        if not run_immediately:
            await self._sleep()

        while not self._stopping.is_set():
            claimed = 0
            try:
                claimed = await self.run_once()
            except Exception:
                logger.exception("Outbox poll tick failed")

            if claimed == 0:
                await self._sleep()
            else:
                await asyncio.sleep(0)

    async def _sleep(self) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)

    async def _claim(self) -> List[OutboxEvent]:
        try:
            async with self._db.connection() as session:
                return await OutboxRepository(session).claim_batch(
                    self._batch_size,
                    now=self._clock.now(),
                    max_attempts=self._retry.max_attempts,
                    claim_timeout=self._claim_timeout,
                )
        except RepositoryError:
            logger.exception("Failed to claim outbox batch, skipping tick")
            return []

    async def _process_event(self, event: OutboxEvent) -> None:
        try:
            outcome = await self._registry.dispatch(event)
        except Exception as exc:
            await self._handle_failure(event, exc)
            return

        try:
            async with self._db.connection() as session:
                await OutboxRepository(session).mark_processed(
                    event.id, now=self._clock.now()
                )
        except RepositoryError:
            # захват истечёт, и событие будет доставлено повторно
            logger.exception(
                "Failed to mark outbox event %s processed",
                event.id,
                extra=event_extra(event),
            )
            return

        if outcome is DispatchOutcome.HANDLED:
            logger.info(
                "Processed outbox event %s (%s)",
                event.id,
                event.event_type,
                extra=event_extra(event),
            )

    async def _handle_failure(self, event: OutboxEvent, exc: Exception) -> None:
        error = (str(exc) or type(exc).__name__)[:MAX_ERROR_LENGTH]
        decision = self._retry.on_failure(event.attempts, error, now=self._clock.now())
        log_extra = event_extra(
            event,
            attempts=decision.attempts,
            error_type=type(exc).__name__,
        )

        try:
            async with self._db.connection() as session:
                repo = OutboxRepository(session)
                if decision.dead_lettered:
                    await repo.dead_letter(
                        event.id,
                        attempts=decision.attempts,
                        error=decision.error_message,
                    )
                else:
                    await repo.schedule_retry(
                        event.id,
                        attempts=decision.attempts,
                        next_attempt_at=decision.next_attempt_at,
                        error=decision.error_message,
                    )
        except RepositoryError:
            logger.exception(
                "Failed to record failure of outbox event %s", event.id, extra=log_extra
            )
            return

        if decision.dead_lettered:
            logger.error(
                "Outbox event %s exceeded max attempts, moved to dead letter: %s",
                event.id,
                error,
                extra=log_extra,
            )
        else:
            logger.warning(
                "Failed to process outbox event %s, retry %d/%d at %s: %s",
                event.id,
                decision.attempts,
                self._retry.max_attempts,
                decision.next_attempt_at.isoformat(),
                error,
                extra=log_extra,
            )
