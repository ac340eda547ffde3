from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional

from outbox_dispatcher.clock import Clock, SystemClock
from outbox_dispatcher.entity.jobs import Job, JobStatus
from outbox_dispatcher.exceptions import (JobPublishError,
                                          JobReservationBusyError)
from outbox_dispatcher.infrastructure.messaging.job_queue import JobTransport
from outbox_dispatcher.infrastructure.persistence.db import Database
from outbox_dispatcher.infrastructure.persistence.repositories.jobs import \
    JobRepository
from outbox_dispatcher.logger import logger


def _plain(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


class IdempotentJobEnqueuer:
    """
    Ставит задания в очередь ровно один раз на идентификатор.

    Идентификатор резервируется в queue_jobs со статусом PENDING отдельной
    короткой транзакцией, затем задание публикуется, и резерв переводится в
    WAITING. Публикация идёт без открытой транзакции. При ошибке публикации
    резерв снимается, и повторная доставка события outbox опубликует задание
    заново. Резерв PENDING, брошенный упавшим воркером, перехватывается
    после reservation_timeout.
    """

    def __init__(
        self,
        db: Database,
        transport: JobTransport,
        *,
        reservation_timeout: float = 60.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self._db = db
        self._transport = transport
        self._reservation_timeout = timedelta(seconds=reservation_timeout)
        self._clock: Clock = clock or SystemClock()

    async def enqueue(
        self,
        queue: str,
        job_name: str,
        payload: Dict[str, Any],
        identity: str,
    ) -> bool:
        """
        :return: True, если задание опубликовано; False, если оно уже было в очереди.
        :raises JobReservationBusyError: резерв держит другой воркер.
        """
        job = Job(
            queue=_plain(queue),
            name=_plain(job_name),
            job_id=identity,
            payload=payload,
        )
        log_extra = {"queue": job.queue, "job_id": identity}

        if not await self._acquire(job):
            logger.info(
                "Job %s already enqueued in %s, skipping",
                identity,
                job.queue,
                extra=log_extra,
            )
            return False

        try:
            await self._transport.publish(job)
        except Exception as exc:
            async with self._db.connection() as session:
                await JobRepository(session).release(job.queue, identity)
            if isinstance(exc, JobPublishError):
                raise
            raise JobPublishError(queue=job.queue, job_id=identity) from exc

        async with self._db.connection() as session:
            await JobRepository(session).mark_published(job.queue, identity)

        logger.info(
            "Enqueued job %s (%s) in %s",
            identity,
            job.name,
            job.queue,
            extra=log_extra,
        )
        return True

    async def _acquire(self, job: Job) -> bool:
        now = self._clock.now()
        async with self._db.connection() as session:
            jobs = JobRepository(session)
            if await jobs.reserve(job, status=JobStatus.PENDING, now=now):
                return True

            record = await jobs.get(job.queue, job.job_id)
            if record is not None and record.status != JobStatus.PENDING:
                return False
            if record is None:
                raise JobReservationBusyError(queue=job.queue, job_id=job.job_id)

            if await jobs.take_over_stale(
                job.queue,
                job.job_id,
                older_than=now - self._reservation_timeout,
                now=now,
            ):
                logger.warning(
                    "Took over stale reservation of job %s in %s",
                    job.job_id,
                    job.queue,
                    extra={"queue": job.queue, "job_id": job.job_id},
                )
                return True

        raise JobReservationBusyError(queue=job.queue, job_id=job.job_id)
