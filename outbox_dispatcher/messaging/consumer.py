from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import aio_pika

from outbox_dispatcher.entity.jobs import Job, JobStatus
from outbox_dispatcher.exceptions import JobConsumeError
from outbox_dispatcher.infrastructure.messaging.job_queue import rabbitmq_url
from outbox_dispatcher.infrastructure.persistence.db import Database
from outbox_dispatcher.infrastructure.persistence.repositories.jobs import \
    JobRepository
from outbox_dispatcher.logger import logger

JobProcessor = Callable[[Job], Awaitable[None]]


def decode_job(body: bytes, queue: str) -> Job:
    payload: dict[str, Any] = json.loads(body.decode())
    job_id = payload.get("id")
    if not job_id:
        raise JobConsumeError(raw_message=payload, message="Job message missing 'id' field")
    return Job(
        queue=payload.get("queue") or queue,
        name=payload.get("name", ""),
        job_id=job_id,
        payload=payload.get("data") or {},
    )


class JobConsumer:
    """
    Базовый потребитель очереди заданий.

    Доставка at-least-once: одно и то же задание может прийти повторно.
    Задания, уже завершённые по реестру queue_jobs, подтверждаются без
    повторной обработки.
    """

    def __init__(
        self,
        queue: str,
        processor: JobProcessor,
        *,
        db: Database,
        url: Optional[str] = None,
        prefetch_count: int = 10,
    ) -> None:
        self._url: str = url or rabbitmq_url()
        self._queue_name = queue
        self._processor = processor
        self._db = db
        self._prefetch_count = prefetch_count

    async def start(self) -> None:
        try:
            connection: aio_pika.abc.AbstractRobustConnection = await aio_pika.connect_robust(
                self._url
            )
        except (aio_pika.AMQPException, OSError) as exc:
            logger.error("Failed to connect to RabbitMQ as consumer: %s", exc)
            raise JobConsumeError(message="Failed to connect to RabbitMQ") from exc

        logger.info("Connected to RabbitMQ as consumer")

        async with connection:
            try:
                channel: aio_pika.abc.AbstractChannel = await connection.channel()
                await channel.set_qos(prefetch_count=self._prefetch_count)
                queue: aio_pika.abc.AbstractQueue = await channel.declare_queue(
                    self._queue_name, durable=True
                )

                await queue.consume(self._on_message, no_ack=False)
                logger.info("Started consuming from queue %s", self._queue_name)
                await asyncio.Future()
            except aio_pika.AMQPException as exc:
                logger.error("RabbitMQ error in consumer: %s", exc)
                raise JobConsumeError(message="RabbitMQ consumer error") from exc

    async def _on_message(self, message: aio_pika.abc.AbstractIncomingMessage) -> None:
        async with message.process(requeue=False):
            try:
                job = decode_job(message.body, self._queue_name)
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                logger.warning("Invalid job message received: %s", exc)
                raise JobConsumeError(message="Invalid job message payload") from exc
            await self.handle(job)

    async def handle(self, job: Job) -> bool:
        """
        Обрабатывает задание, если оно ещё не завершено.
        :return: False, если задание пропущено как дубликат.
        """
        async with self._db.connection() as session:
            jobs = JobRepository(session)
            record = await jobs.get(job.queue, job.job_id)
            if record is not None and record.status == JobStatus.COMPLETED:
                logger.info(
                    "Job %s already completed, skipping duplicate delivery",
                    job.job_id,
                    extra={"queue": job.queue, "job_id": job.job_id},
                )
                return False

            await jobs.set_status(job.queue, job.job_id, JobStatus.ACTIVE)
            try:
                await self._processor(job)
            except Exception as exc:
                logger.exception("Failed to process job %s", job.job_id)
                await jobs.set_status(
                    job.queue, job.job_id, JobStatus.FAILED, error=str(exc)[:1000]
                )
                raise JobConsumeError(raw_message=job.job_id, message="Job processing failed") from exc

            await jobs.set_status(job.queue, job.job_id, JobStatus.COMPLETED)
            logger.info("Processed job %s", job.job_id, extra={"queue": job.queue, "job_id": job.job_id})
            return True
