from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Optional, Protocol, Set

import aio_pika
from aio_pika import DeliveryMode
from aio_pika.abc import AbstractChannel, AbstractRobustConnection
from aio_pika.exceptions import DeliveryError

from outbox_dispatcher.entity.jobs import Job
from outbox_dispatcher.exceptions import JobPublishError
from outbox_dispatcher.logger import logger
from outbox_dispatcher.settings import settings


class JobTransport(Protocol):
    async def publish(self, job: Job) -> None:
        ...


def rabbitmq_url() -> str:
    return (
        f"amqp://{settings.RABBIT_USER}:{settings.RABBIT_PASS}"
        f"@{settings.RABBIT_HOST}:{settings.RABBIT_PORT}{settings.RABBIT_VHOST}"
    )


def encode_job(job: Job) -> bytes:
    return json.dumps(
        {"id": job.job_id, "name": job.name, "queue": job.queue, "data": job.payload},
        default=str,
    ).encode()


class RabbitJobQueue:
    """
    Публикует задания в durable-очереди RabbitMQ, по одной очереди на QueueName.
    """

    def __init__(self, url: Optional[str] = None) -> None:
        self._url = url or rabbitmq_url()
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._declared: Set[str] = set()
        self._setup_lock = asyncio.Lock()

    async def publish(self, job: Job) -> None:
        channel = await self._ensure_channel()
        await self._ensure_queue(channel, job.queue)
        try:
            await channel.default_exchange.publish(
                aio_pika.Message(
                    body=encode_job(job),
                    content_type="application/json",
                    message_id=job.job_id,
                    delivery_mode=DeliveryMode.PERSISTENT,
                    headers={"job_id": job.job_id, "job_name": job.name},
                ),
                routing_key=job.queue,
            )
        except (DeliveryError, aio_pika.AMQPException) as exc:
            logger.exception("Failed to publish job %s to queue %s", job.job_id, job.queue)
            await self._reset_connection()
            raise JobPublishError(queue=job.queue, job_id=job.job_id) from exc

    async def close(self) -> None:
        await self._reset_connection()

    async def _ensure_channel(self) -> AbstractChannel:
        if self._channel and not self._channel.is_closed:
            return self._channel

        async with self._setup_lock:
            if self._connection is None or self._connection.is_closed:
                try:
                    self._connection = await aio_pika.connect_robust(self._url)
                except (aio_pika.AMQPException, OSError) as exc:
                    logger.error("Failed to connect to RabbitMQ: %s", exc)
                    raise JobPublishError(
                        queue="*",
                        job_id="*",
                        message="Failed to connect to RabbitMQ",
                    ) from exc

            if self._channel is None or self._channel.is_closed:
                self._channel = await self._connection.channel(publisher_confirms=True)
                self._declared.clear()

            return self._channel

    async def _ensure_queue(self, channel: AbstractChannel, queue: str) -> None:
        if queue in self._declared:
            return

        async with self._setup_lock:
            if queue in self._declared:
                return
            await channel.declare_queue(queue, durable=True)
            self._declared.add(queue)

    async def _reset_connection(self) -> None:
        async with self._setup_lock:
            if self._channel is not None:
                with contextlib.suppress(Exception):
                    await self._channel.close()
            if self._connection is not None:
                with contextlib.suppress(Exception):
                    await self._connection.close()
            self._channel = None
            self._connection = None
            self._declared.clear()
