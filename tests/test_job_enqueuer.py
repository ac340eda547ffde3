from __future__ import annotations

from datetime import timedelta

import pytest

from outbox_dispatcher.entity.jobs import (Job, JobName, JobStatus, QueueName,
                                           job_identity)
from outbox_dispatcher.exceptions import (JobPublishError,
                                          JobReservationBusyError)
from outbox_dispatcher.infrastructure.persistence.repositories.jobs import \
    JobRepository
from outbox_dispatcher.messaging.enqueuer import IdempotentJobEnqueuer


async def _ledger(db, queue: str, job_id: str):
    async with db.connection() as session:
        return await JobRepository(session).get(queue, job_id)


def test_job_identity_is_derived_from_event_id() -> None:
    assert job_identity(42) == "outbox_42"
    assert job_identity(42, "alert-1") == "outbox_42_alert-1"


@pytest.mark.asyncio()
async def test_enqueue_publishes_once_per_identity(db, enqueuer, transport) -> None:
    payload = {"documentId": "d1"}

    first = await enqueuer.enqueue(QueueName.EXTRACTION, JobName.EXTRACT, payload, "outbox_1")
    second = await enqueuer.enqueue(QueueName.EXTRACTION, JobName.EXTRACT, payload, "outbox_1")

    assert first is True
    assert second is False
    assert len(transport.published) == 1
    job = transport.published[0]
    assert job.queue == "extraction"
    assert job.name == "extract"
    assert job.job_id == "outbox_1"
    assert job.payload == payload

    record = await _ledger(db, "extraction", "outbox_1")
    assert record is not None
    assert record.status == JobStatus.WAITING


@pytest.mark.asyncio()
async def test_same_identity_is_independent_per_queue(enqueuer, transport) -> None:
    await enqueuer.enqueue(QueueName.ANOMALY_DETECTION, JobName.DETECT, {}, "outbox_7")
    await enqueuer.enqueue(QueueName.AGGREGATION, JobName.AGGREGATE, {}, "outbox_7")

    assert [job.queue for job in transport.published] == ["anomaly-detection", "aggregation"]


@pytest.mark.asyncio()
async def test_publish_failure_releases_reservation(db, enqueuer, transport) -> None:
    transport.fail_with = JobPublishError(queue="extraction", job_id="outbox_3")

    with pytest.raises(JobPublishError):
        await enqueuer.enqueue(QueueName.EXTRACTION, JobName.EXTRACT, {}, "outbox_3")

    assert await _ledger(db, "extraction", "outbox_3") is None

    transport.fail_with = None
    assert await enqueuer.enqueue(QueueName.EXTRACTION, JobName.EXTRACT, {}, "outbox_3") is True
    assert len(transport.published) == 1


@pytest.mark.asyncio()
async def test_unexpected_transport_error_is_wrapped(db, enqueuer, transport) -> None:
    transport.fail_with = ConnectionError("broker unreachable")

    with pytest.raises(JobPublishError) as exc_info:
        await enqueuer.enqueue(QueueName.ALERTS, JobName.SEND, {}, "outbox_9")

    assert exc_info.value.context == {"queue": "alerts", "job_id": "outbox_9"}
    assert isinstance(exc_info.value.__cause__, ConnectionError)
    assert await _ledger(db, "alerts", "outbox_9") is None


class LedgerPeekingTransport:
    """
    Во время публикации читает реестр отдельной сессией.
    """

    def __init__(self, db) -> None:
        self._db = db
        self.seen_status = None

    async def publish(self, job: Job) -> None:
        record = await _ledger(self._db, job.queue, job.job_id)
        self.seen_status = record.status if record else None


async def _reserve_pending(db, job_id: str, at) -> None:
    async with db.connection() as session:
        await JobRepository(session).reserve(
            Job(queue="extraction", name="extract", job_id=job_id, payload={}),
            status=JobStatus.PENDING,
            now=at,
        )


@pytest.mark.asyncio()
async def test_reservation_is_committed_before_publish(db) -> None:
    transport = LedgerPeekingTransport(db)

    await IdempotentJobEnqueuer(db=db, transport=transport).enqueue(
        QueueName.EXTRACTION, JobName.EXTRACT, {}, "outbox_11"
    )

    assert transport.seen_status == JobStatus.PENDING
    assert (await _ledger(db, "extraction", "outbox_11")).status == JobStatus.WAITING


@pytest.mark.asyncio()
async def test_fresh_pending_reservation_is_busy(db, transport, clock) -> None:
    await _reserve_pending(db, "outbox_12", clock.now() - timedelta(seconds=10))
    enqueuer = IdempotentJobEnqueuer(
        db=db, transport=transport, reservation_timeout=60, clock=clock
    )

    with pytest.raises(JobReservationBusyError):
        await enqueuer.enqueue(QueueName.EXTRACTION, JobName.EXTRACT, {}, "outbox_12")

    assert transport.published == []


@pytest.mark.asyncio()
async def test_stale_pending_reservation_is_taken_over(db, transport, clock, app_logs) -> None:
    await _reserve_pending(db, "outbox_13", clock.now() - timedelta(minutes=5))
    enqueuer = IdempotentJobEnqueuer(
        db=db, transport=transport, reservation_timeout=60, clock=clock
    )

    assert await enqueuer.enqueue(QueueName.EXTRACTION, JobName.EXTRACT, {}, "outbox_13")

    assert [job.job_id for job in transport.published] == ["outbox_13"]
    assert (await _ledger(db, "extraction", "outbox_13")).status == JobStatus.WAITING
    assert any("stale reservation" in r.getMessage() for r in app_logs.records)


@pytest.mark.asyncio()
async def test_mark_published_keeps_status_set_by_consumer(db, clock) -> None:
    await _reserve_pending(db, "outbox_14", clock.now())
    async with db.connection() as session:
        jobs = JobRepository(session)
        await jobs.set_status("extraction", "outbox_14", JobStatus.ACTIVE)
        await jobs.mark_published("extraction", "outbox_14")

    assert (await _ledger(db, "extraction", "outbox_14")).status == JobStatus.ACTIVE
