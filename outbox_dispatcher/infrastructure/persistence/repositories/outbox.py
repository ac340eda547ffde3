from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import Select, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from outbox_dispatcher.clock import utcnow
from outbox_dispatcher.entity.outbox import (NewOutboxEvent, OutboxEvent,
                                             OutboxStats)
from outbox_dispatcher.exceptions import RepositoryError
from outbox_dispatcher.infrastructure.persistence.db.schema import \
    OutboxEventModel


class OutboxRepository:
    """
    Хранилище outbox: запись событий продюсерами, атомарный захват пачек
    воркерами и перевод событий по жизненному циклу.
    """

    def __init__(self, session: AsyncSession, *, auto_commit: bool = True) -> None:
        self._session = session
        self._auto_commit = auto_commit

    async def add_event(
        self,
        event: NewOutboxEvent,
        *,
        now: Optional[datetime] = None,
    ) -> OutboxEvent:
        """
        Новое сообщение для outbox. Вызывается внутри транзакции продюсера.
        """
        now = now or utcnow()
        model = OutboxEventModel(
            aggregate_type=event.aggregate_type,
            aggregate_id=str(event.aggregate_id),
            event_type=event.event_type,
            payload=json.dumps(event.payload, default=str),
            created_at=now,
            next_attempt_at=now,
            attempts=0,
        )
        try:
            self._session.add(model)
            await self._commit()
            await self._session.refresh(model)
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise RepositoryError("Failed to add outbox event") from exc
        return self._to_entity(model)

    async def claim_batch(
        self,
        limit: int,
        *,
        now: datetime,
        max_attempts: int,
        claim_timeout: timedelta,
    ) -> List[OutboxEvent]:
        """
        Атомарно выбирает пачку доступных событий и помечает их как захваченные.

        Выборка идёт с FOR UPDATE SKIP LOCKED: строки, которые прямо сейчас
        захватывает другой воркер, пропускаются. processing_at проставляется в
        том же UPDATE и коммитится до запуска обработчиков.
        """
        stale_before = now - claim_timeout
        candidates: Select[Any] = (
            select(OutboxEventModel.id)
            .where(
                OutboxEventModel.processed_at.is_(None),
                or_(
                    OutboxEventModel.processing_at.is_(None),
                    OutboxEventModel.processing_at < stale_before,
                ),
                OutboxEventModel.next_attempt_at <= now,
                OutboxEventModel.attempts < max_attempts,
            )
            .order_by(OutboxEventModel.created_at.asc(), OutboxEventModel.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(OutboxEventModel)
            .where(OutboxEventModel.id.in_(candidates))
            .values(processing_at=now)
            .returning(OutboxEventModel)
        )
        try:
            rows = (await self._session.execute(stmt)).scalars().all()
            events = sorted(
                (self._to_entity(row) for row in rows),
                key=lambda e: (e.created_at, e.id),
            )
            await self._commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise RepositoryError("Failed to claim outbox batch") from exc
        return events

    async def mark_processed(self, event_id: int, *, now: datetime) -> None:
        """
        Терминальный успех: снимает захват и фиксирует время обработки.
        """
        await self._update(
            event_id,
            "Failed to mark outbox event processed",
            processed_at=now,
            processing_at=None,
            attempts=OutboxEventModel.attempts + 1,
        )

    async def schedule_retry(
        self,
        event_id: int,
        *,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
    ) -> None:
        await self._update(
            event_id,
            "Failed to schedule outbox retry",
            attempts=attempts,
            processing_at=None,
            next_attempt_at=next_attempt_at,
            error_message=error,
        )

    async def dead_letter(self, event_id: int, *, attempts: int, error: str) -> None:
        """
        processed_at остаётся NULL, а attempts >= max_attempts исключает
        событие из выборки claim_batch до ручного replay.
        """
        await self._update(
            event_id,
            "Failed to dead-letter outbox event",
            attempts=attempts,
            processing_at=None,
            error_message=error,
        )

    async def replay(self, event_id: int, *, now: datetime) -> None:
        await self._update(
            event_id,
            "Failed to replay outbox event",
            attempts=0,
            processing_at=None,
            next_attempt_at=now,
        )

    async def get_event(self, event_id: int) -> Optional[OutboxEvent]:
        try:
            model = await self._session.get(OutboxEventModel, event_id)
        except SQLAlchemyError as exc:
            raise RepositoryError("Failed to get outbox event") from exc
        return self._to_entity(model) if model else None

    async def list_dead_letters(self, limit: int, *, max_attempts: int) -> List[OutboxEvent]:
        stmt: Select[Any] = (
            select(OutboxEventModel)
            .where(
                OutboxEventModel.processed_at.is_(None),
                OutboxEventModel.attempts >= max_attempts,
            )
            .order_by(OutboxEventModel.id.asc())
            .limit(limit)
        )
        try:
            rows = (await self._session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise RepositoryError("Failed to list dead-lettered events") from exc
        return [self._to_entity(row) for row in rows]

    async def purge_processed(self, older_than: datetime, *, batch_size: int) -> int:
        """
        Удаляет обработанные события старше older_than пачками по batch_size.
        Необработанные и dead-letter события не трогает.
        """
        deleted = 0
        try:
            while True:
                ids_stmt: Select[Any] = (
                    select(OutboxEventModel.id)
                    .where(
                        OutboxEventModel.processed_at.is_not(None),
                        OutboxEventModel.processed_at < older_than,
                    )
                    .order_by(OutboxEventModel.id.asc())
                    .limit(batch_size)
                )
                ids = list((await self._session.execute(ids_stmt)).scalars().all())
                if not ids:
                    break
                await self._session.execute(
                    delete(OutboxEventModel).where(OutboxEventModel.id.in_(ids))
                )
                await self._commit()
                deleted += len(ids)
                if len(ids) < batch_size:
                    break
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise RepositoryError("Failed to purge processed outbox events") from exc
        return deleted

    async def stats(
        self,
        *,
        now: datetime,
        max_attempts: int,
        claim_timeout: timedelta,
    ) -> OutboxStats:
        unprocessed = OutboxEventModel.processed_at.is_(None)
        stmt = select(
            func.count(OutboxEventModel.id),
            func.count(OutboxEventModel.id).filter(OutboxEventModel.processed_at.is_not(None)),
            func.count(OutboxEventModel.id).filter(
                unprocessed, OutboxEventModel.attempts < max_attempts
            ),
            func.count(OutboxEventModel.id).filter(
                unprocessed,
                OutboxEventModel.processing_at >= now - claim_timeout,
            ),
            func.count(OutboxEventModel.id).filter(
                unprocessed, OutboxEventModel.attempts >= max_attempts
            ),
        )
        try:
            total, processed, pending, in_flight, dead = (await self._session.execute(stmt)).one()
        except SQLAlchemyError as exc:
            raise RepositoryError("Failed to collect outbox stats") from exc
        return OutboxStats(
            total=int(total or 0),
            processed=int(processed or 0),
            pending=int(pending or 0),
            in_flight=int(in_flight or 0),
            dead_lettered=int(dead or 0),
        )

    async def _update(self, event_id: int, failure_message: str, **values: Any) -> None:
        try:
            await self._session.execute(
                update(OutboxEventModel)
                .where(OutboxEventModel.id == event_id)
                .values(**values)
            )
            await self._commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise RepositoryError(failure_message) from exc

    async def _commit(self) -> None:
        if self._auto_commit:
            await self._session.commit()
        else:
            await self._session.flush()

    @staticmethod
    def _to_entity(model: OutboxEventModel) -> OutboxEvent:
        payload: Dict[str, Any] = json.loads(model.payload) if model.payload else {}
        return OutboxEvent(
            id=model.id,
            aggregate_type=model.aggregate_type,
            aggregate_id=model.aggregate_id,
            event_type=model.event_type,
            payload=payload,
            created_at=model.created_at,
            processed_at=model.processed_at,
            processing_at=model.processing_at,
            attempts=model.attempts,
            next_attempt_at=model.next_attempt_at,
            error_message=model.error_message,
        )
