from __future__ import annotations

import uuid
from typing import Any, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from outbox_dispatcher.clock import utcnow
from outbox_dispatcher.entity.alerts import (Alert, AlertChannel, AlertStatus,
                                             NewAlert, Recipient)
from outbox_dispatcher.exceptions import RepositoryError
from outbox_dispatcher.infrastructure.persistence.db.schema import (
    AlertModel, AnomalyModel, UserModel)
from outbox_dispatcher.infrastructure.persistence.repositories.dialects import \
    upsert_insert


class AlertRepository:
    """
    Доступ к получателям и записям алертов, которые создают обработчики outbox.
    """

    def __init__(self, session: AsyncSession, *, auto_commit: bool = True) -> None:
        self._session = session
        self._auto_commit = auto_commit

    async def find_recipients(self, roles: Sequence[str], limit: int) -> List[Recipient]:
        stmt: Select[Any] = (
            select(UserModel)
            .where(UserModel.is_active.is_(True), UserModel.role.in_(list(roles)))
            .order_by(UserModel.created_at.asc(), UserModel.id.asc())
            .limit(limit)
        )
        try:
            rows = (await self._session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise RepositoryError("Failed to load alert recipients") from exc
        return [Recipient(user_id=row.id, email=row.email) for row in rows]

    async def find_alert(
        self,
        anomaly_id: UUID,
        channel: AlertChannel,
        user_id: Optional[UUID],
    ) -> Optional[Alert]:
        """
        Ищет уже созданный алерт для пары (получатель, канал), чтобы повторная
        доставка события не уведомляла пользователя дважды.
        """
        stmt: Select[Any] = select(AlertModel).where(
            AlertModel.anomaly_id == anomaly_id,
            AlertModel.channel == channel,
        )
        if user_id is None:
            stmt = stmt.where(AlertModel.user_id.is_(None))
        else:
            stmt = stmt.where(AlertModel.user_id == user_id)
        try:
            row = (await self._session.execute(stmt.limit(1))).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise RepositoryError("Failed to look up alert") from exc
        return self._to_entity(row) if row else None

    async def ensure_alert(self, payload: NewAlert) -> Alert:
        """
        Создаёт алерт, если для (аномалия, канал, получатель) его ещё нет, и
        возвращает сохранённую запись. Параллельные доставки одного события
        упираются в уникальный индекс и получают один и тот же алерт.
        """
        insert = upsert_insert(self._session)
        stmt = (
            insert(AlertModel)
            .values(
                id=uuid.uuid4(),
                anomaly_id=payload.anomaly_id,
                user_id=payload.user_id,
                channel=payload.channel,
                recipient=payload.recipient,
                subject=payload.subject,
                body=payload.body,
                status=AlertStatus.PENDING,
                created_at=utcnow(),
            )
            .on_conflict_do_nothing()
        )
        try:
            await self._session.execute(stmt)
            await self._commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise RepositoryError("Failed to create alert") from exc

        alert = await self.find_alert(payload.anomaly_id, payload.channel, payload.user_id)
        if alert is None:
            raise RepositoryError("Alert is missing after insert")
        return alert

    async def get_alert_cost_record(self, alert_id: UUID) -> Optional[tuple[Alert, str]]:
        """
        Возвращает алерт вместе с cost_record_id его аномалии.
        """
        stmt: Select[Any] = (
            select(AlertModel, AnomalyModel.cost_record_id)
            .join(AnomalyModel, AnomalyModel.id == AlertModel.anomaly_id)
            .where(AlertModel.id == alert_id)
        )
        try:
            row = (await self._session.execute(stmt)).one_or_none()
        except SQLAlchemyError as exc:
            raise RepositoryError("Failed to get alert") from exc
        if row is None:
            return None
        alert, cost_record_id = row
        return self._to_entity(alert), cost_record_id

    async def _commit(self) -> None:
        if self._auto_commit:
            await self._session.commit()
        else:
            await self._session.flush()

    @staticmethod
    def _to_entity(model: AlertModel) -> Alert:
        return Alert(
            id=model.id,
            anomaly_id=model.anomaly_id,
            user_id=model.user_id,
            channel=model.channel,
            recipient=model.recipient,
            subject=model.subject,
            body=model.body,
            status=model.status,
            created_at=model.created_at,
        )
