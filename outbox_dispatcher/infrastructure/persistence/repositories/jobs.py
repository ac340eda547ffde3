from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from outbox_dispatcher.clock import utcnow
from outbox_dispatcher.entity.jobs import Job, JobRecord, JobStatus, QueueStats
from outbox_dispatcher.exceptions import RepositoryError
from outbox_dispatcher.infrastructure.persistence.db.schema import QueueJobModel
from outbox_dispatcher.infrastructure.persistence.repositories.dialects import \
    upsert_insert


class JobRepository:
    """
    Реестр заданий: уникальность (queue, job_id) и статусы для потребителей.
    """

    def __init__(self, session: AsyncSession, *, auto_commit: bool = True) -> None:
        self._session = session
        self._auto_commit = auto_commit

    async def reserve(
        self,
        job: Job,
        *,
        status: JobStatus = JobStatus.WAITING,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Резервирует идентификатор задания в очереди.
        :return: False, если задание с таким job_id уже есть в очереди.
        """
        now = now or utcnow()
        insert = upsert_insert(self._session)
        stmt = (
            insert(QueueJobModel)
            .values(
                queue=job.queue,
                name=job.name,
                job_id=job.job_id,
                status=status,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["queue", "job_id"])
            .returning(QueueJobModel.id)
        )
        try:
            inserted = (await self._session.execute(stmt)).scalar_one_or_none()
            await self._commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise RepositoryError("Failed to reserve job identity") from exc
        return inserted is not None

    async def mark_published(self, queue: str, job_id: str) -> None:
        """
        PENDING -> WAITING. Статус, уже выставленный потребителем, не трогает.
        """
        try:
            await self._session.execute(
                update(QueueJobModel)
                .where(
                    QueueJobModel.queue == queue,
                    QueueJobModel.job_id == job_id,
                    QueueJobModel.status == JobStatus.PENDING,
                )
                .values(status=JobStatus.WAITING, updated_at=utcnow())
            )
            await self._commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise RepositoryError("Failed to mark job published") from exc

    async def take_over_stale(
        self,
        queue: str,
        job_id: str,
        *,
        older_than: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Перехватывает резерв PENDING, брошенный упавшим воркером.
        :return: True, если резерв старше older_than и теперь принадлежит вызывающему.
        """
        stmt = (
            update(QueueJobModel)
            .where(
                QueueJobModel.queue == queue,
                QueueJobModel.job_id == job_id,
                QueueJobModel.status == JobStatus.PENDING,
                QueueJobModel.updated_at < older_than,
            )
            .values(updated_at=now or utcnow())
            .returning(QueueJobModel.id)
        )
        try:
            taken = (await self._session.execute(stmt)).scalar_one_or_none()
            await self._commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise RepositoryError("Failed to take over job reservation") from exc
        return taken is not None

    async def release(self, queue: str, job_id: str) -> None:
        """
        Снимает неопубликованный резерв, чтобы повторная доставка опубликовала задание.
        """
        try:
            await self._session.execute(
                delete(QueueJobModel).where(
                    QueueJobModel.queue == queue,
                    QueueJobModel.job_id == job_id,
                    QueueJobModel.status == JobStatus.PENDING,
                )
            )
            await self._commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise RepositoryError("Failed to release job reservation") from exc

    async def get(self, queue: str, job_id: str) -> Optional[JobRecord]:
        stmt: Select[Any] = select(QueueJobModel).where(
            QueueJobModel.queue == queue,
            QueueJobModel.job_id == job_id,
        )
        try:
            row = (await self._session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise RepositoryError("Failed to get job") from exc
        return self._to_entity(row) if row else None

    async def set_status(
        self,
        queue: str,
        job_id: str,
        status: JobStatus,
        *,
        error: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {"status": status, "error": error, "updated_at": utcnow()}
        if status == JobStatus.ACTIVE:
            values["attempts"] = QueueJobModel.attempts + 1
        try:
            await self._session.execute(
                update(QueueJobModel)
                .where(QueueJobModel.queue == queue, QueueJobModel.job_id == job_id)
                .values(**values)
            )
            await self._commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise RepositoryError("Failed to update job status") from exc

    async def stats(self) -> List[QueueStats]:
        """
        Количество заданий по очередям и статусам.
        """
        stmt = (
            select(QueueJobModel.queue, QueueJobModel.status, func.count(QueueJobModel.id))
            .group_by(QueueJobModel.queue, QueueJobModel.status)
            .order_by(QueueJobModel.queue)
        )
        try:
            rows = (await self._session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise RepositoryError("Failed to collect queue stats") from exc

        by_queue: Dict[str, QueueStats] = {}
        for queue, status, count in rows:
            stats = by_queue.setdefault(queue, QueueStats(queue=queue))
            setattr(stats, JobStatus(status).value.lower(), int(count))
        return list(by_queue.values())

    async def purge(
        self,
        older_than: datetime,
        statuses: Sequence[JobStatus],
        *,
        batch_size: int,
    ) -> int:
        """
        Удаляет записи реестра в статусах statuses, не обновлявшиеся с older_than.
        """
        deleted = 0
        try:
            while True:
                ids_stmt: Select[Any] = (
                    select(QueueJobModel.id)
                    .where(
                        QueueJobModel.status.in_(list(statuses)),
                        QueueJobModel.updated_at < older_than,
                    )
                    .order_by(QueueJobModel.id.asc())
                    .limit(batch_size)
                )
                ids = list((await self._session.execute(ids_stmt)).scalars().all())
                if not ids:
                    break
                await self._session.execute(
                    delete(QueueJobModel).where(QueueJobModel.id.in_(ids))
                )
                await self._commit()
                deleted += len(ids)
                if len(ids) < batch_size:
                    break
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise RepositoryError("Failed to purge job ledger") from exc
        return deleted

    async def _commit(self) -> None:
        if self._auto_commit:
            await self._session.commit()
        else:
            await self._session.flush()

    @staticmethod
    def _to_entity(model: QueueJobModel) -> JobRecord:
        return JobRecord(
            id=model.id,
            queue=model.queue,
            name=model.name,
            job_id=model.job_id,
            status=model.status,
            attempts=model.attempts,
            error=model.error,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )
