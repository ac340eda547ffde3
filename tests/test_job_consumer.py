from __future__ import annotations

import json

import pytest

from outbox_dispatcher.entity.jobs import Job, JobStatus
from outbox_dispatcher.exceptions import JobConsumeError
from outbox_dispatcher.infrastructure.messaging.job_queue import encode_job
from outbox_dispatcher.infrastructure.persistence.repositories.jobs import \
    JobRepository
from outbox_dispatcher.messaging.consumer import JobConsumer, decode_job

JOB = Job(
    queue="extraction",
    name="extract",
    job_id="outbox_1",
    payload={"documentId": "d1"},
)


async def _reserve(db, job: Job) -> None:
    async with db.connection() as session:
        assert await JobRepository(session).reserve(job)


async def _record(db, job: Job):
    async with db.connection() as session:
        return await JobRepository(session).get(job.queue, job.job_id)


def test_encoded_job_carries_identity_and_data() -> None:
    body = encode_job(JOB)

    assert json.loads(body) == {
        "id": "outbox_1",
        "name": "extract",
        "queue": "extraction",
        "data": {"documentId": "d1"},
    }
    assert decode_job(body, "extraction") == JOB


def test_decode_job_requires_id() -> None:
    with pytest.raises(JobConsumeError):
        decode_job(b'{"name": "extract", "data": {}}', "extraction")


@pytest.mark.asyncio()
async def test_duplicate_delivery_is_processed_once(db) -> None:
    processed: list[str] = []

    async def processor(job: Job) -> None:
        processed.append(job.job_id)

    await _reserve(db, JOB)
    consumer = JobConsumer("extraction", processor, db=db, url="amqp://unused/")

    assert await consumer.handle(JOB) is True
    assert await consumer.handle(JOB) is False

    assert processed == ["outbox_1"]
    record = await _record(db, JOB)
    assert record.status == JobStatus.COMPLETED
    assert record.attempts == 1


@pytest.mark.asyncio()
async def test_failed_job_is_recorded_and_raised(db) -> None:
    async def processor(job: Job) -> None:
        raise RuntimeError("ocr crashed")

    await _reserve(db, JOB)
    consumer = JobConsumer("extraction", processor, db=db, url="amqp://unused/")

    with pytest.raises(JobConsumeError):
        await consumer.handle(JOB)

    record = await _record(db, JOB)
    assert record.status == JobStatus.FAILED
    assert record.error == "ocr crashed"
