from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Sequence
from uuid import UUID

from outbox_dispatcher.entity.alerts import (Alert, AlertChannel, NewAlert,
                                             Severity)
from outbox_dispatcher.entity.jobs import JobName, QueueName, job_identity
from outbox_dispatcher.entity.outbox import (DispatchOutcome, EventType,
                                             OutboxEvent)
from outbox_dispatcher.exceptions import InvalidEventPayloadError
from outbox_dispatcher.infrastructure.persistence.db import Database
from outbox_dispatcher.infrastructure.persistence.repositories.alerts import \
    AlertRepository
from outbox_dispatcher.logger import event_extra, logger
from outbox_dispatcher.messaging.enqueuer import IdempotentJobEnqueuer

EventHandler = Callable[[OutboxEvent], Awaitable[None]]


class HandlerRegistry:
    """
    Сопоставляет EventType обработчику.

    Неизвестный тип события не ошибка: он логируется, а событие считается
    обработанным, чтобы продюсеры и потребители могли развиваться независимо.
    """

    def __init__(self) -> None:
        self._handlers: Dict[EventType, EventHandler] = {}

    def register(self, event_type: EventType, handler: EventHandler) -> None:
        if event_type is EventType.UNKNOWN:
            raise ValueError("Cannot register a handler for the unknown event type")
        self._handlers[event_type] = handler

    def get(self, event_type: EventType) -> Optional[EventHandler]:
        return self._handlers.get(event_type)

    @property
    def registered(self) -> FrozenSet[EventType]:
        return frozenset(self._handlers)

    async def dispatch(self, event: OutboxEvent) -> DispatchOutcome:
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.warning(
                "No handler for event type %s",
                event.event_type,
                extra=event_extra(event),
            )
            return DispatchOutcome.UNKNOWN

        await handler(event)
        return DispatchOutcome.HANDLED


def _require(event: OutboxEvent, *keys: str) -> List[Any]:
    values = []
    for key in keys:
        value = event.payload.get(key)
        if value is None:
            raise InvalidEventPayloadError(event_id=event.id, missing=key)
        values.append(value)
    return values


class OutboxEventHandlers:
    """
    Обработчики известных событий. Все они идемпотентны: задания ставятся с
    идентификатором из id события, алерты переиспользуются, если уже созданы.
    """

    def __init__(
        self,
        db: Database,
        enqueuer: IdempotentJobEnqueuer,
        *,
        alert_channels: Sequence[str] = ("email",),
        notify_severities: Sequence[str] = ("warning", "critical"),
        recipient_roles: Sequence[str] = ("admin", "manager"),
        recipient_limit: int = 5,
        webhooks: Optional[Dict[str, str]] = None,
    ) -> None:
        self._db = db
        self._enqueuer = enqueuer
        self._channels = [AlertChannel(channel) for channel in alert_channels]
        self._severities = {Severity(severity) for severity in notify_severities}
        self._recipient_roles = list(recipient_roles)
        self._recipient_limit = recipient_limit
        self._webhooks = {AlertChannel(k): v for k, v in (webhooks or {}).items() if v}

    def register_all(self, registry: HandlerRegistry) -> HandlerRegistry:
        registry.register(EventType.DOCUMENT_UPLOADED, self.document_uploaded)
        registry.register(EventType.DOCUMENT_EXTRACTION_RETRY, self.document_extraction_retry)
        registry.register(EventType.COST_RECORD_CREATED, self.cost_record_created)
        registry.register(EventType.ANOMALY_DETECTED, self.anomaly_detected)
        registry.register(EventType.ALERT_RETRY, self.alert_retry)
        return registry

    async def document_uploaded(self, event: OutboxEvent) -> None:
        document_id, storage_path, mime_type = _require(
            event, "documentId", "storagePath", "mimeType"
        )
        await self._enqueuer.enqueue(
            QueueName.EXTRACTION,
            JobName.EXTRACT,
            {
                "documentId": document_id,
                "storagePath": storage_path,
                "mimeType": mime_type,
                "filename": event.payload.get("filename"),
            },
            job_identity(event.id),
        )

    async def document_extraction_retry(self, event: OutboxEvent) -> None:
        document_id, storage_path, mime_type = _require(
            event, "documentId", "storagePath", "mimeType"
        )
        await self._enqueuer.enqueue(
            QueueName.EXTRACTION,
            JobName.EXTRACT,
            {
                "documentId": document_id,
                "storagePath": storage_path,
                "mimeType": mime_type,
            },
            job_identity(event.id),
        )

    async def cost_record_created(self, event: OutboxEvent) -> None:
        (cost_record_id,) = _require(event, "costRecordId")
        await self._enqueuer.enqueue(
            QueueName.ANOMALY_DETECTION,
            JobName.DETECT,
            {
                "costRecordId": cost_record_id,
                "isBackfill": bool(event.payload.get("isBackfill", False)),
            },
            job_identity(event.id),
        )
        await self._enqueuer.enqueue(
            QueueName.AGGREGATION,
            JobName.AGGREGATE,
            {"costRecordId": cost_record_id, "type": "update"},
            job_identity(event.id),
        )

    async def anomaly_detected(self, event: OutboxEvent) -> None:
        """
        Создаёт алерт на каждый канал (и получателя для персональных каналов)
        и ставит их на отправку. Повторная доставка находит уже созданные
        алерты, поэтому никто не получает уведомление дважды.
        """
        cost_record_id, severity_raw, message = _require(
            event, "costRecordId", "severity", "message"
        )
        try:
            severity = Severity(severity_raw)
        except ValueError:
            raise InvalidEventPayloadError(event_id=event.id, missing="severity") from None

        if severity not in self._severities:
            logger.info(
                "Skipping alerts for %s anomaly",
                severity.value,
                extra=event_extra(event),
            )
            return

        try:
            anomaly_id = UUID(str(event.payload.get("anomalyId") or event.aggregate_id))
        except ValueError:
            raise InvalidEventPayloadError(event_id=event.id, missing="anomalyId") from None

        prefix = "Critical" if severity is Severity.CRITICAL else "Warning"
        subject = f"[{prefix}] Cost anomaly: {message}"

        alerts: List[Alert] = []
        async with self._db.connection() as session:
            repo = AlertRepository(session)
            for channel in self._channels:
                if channel.is_per_user:
                    recipients = await repo.find_recipients(
                        self._recipient_roles, self._recipient_limit
                    )
                    targets = [(r.user_id, r.email) for r in recipients]
                else:
                    webhook = self._webhooks.get(channel)
                    if not webhook:
                        logger.warning(
                            "Alert channel %s has no webhook configured",
                            channel.value,
                            extra=event_extra(event),
                        )
                        continue
                    targets = [(None, webhook)]

                for user_id, address in targets:
                    alert = await repo.ensure_alert(
                        NewAlert(
                            anomaly_id=anomaly_id,
                            user_id=user_id,
                            channel=channel,
                            recipient=address,
                            subject=subject,
                            body=message,
                        )
                    )
                    alerts.append(alert)

        for alert in alerts:
            await self._enqueuer.enqueue(
                QueueName.ALERTS,
                JobName.SEND,
                {
                    "alertId": str(alert.id),
                    "anomalyId": str(anomaly_id),
                    "costRecordId": cost_record_id,
                },
                job_identity(event.id, alert.id),
            )

    async def alert_retry(self, event: OutboxEvent) -> None:
        (alert_id_raw,) = _require(event, "alertId")
        try:
            alert_id = UUID(str(alert_id_raw))
        except ValueError:
            raise InvalidEventPayloadError(event_id=event.id, missing="alertId") from None

        async with self._db.connection() as session:
            found = await AlertRepository(session).get_alert_cost_record(alert_id)

        if found is None:
            logger.info("Alert %s no longer exists, nothing to retry", alert_id)
            return

        alert, cost_record_id = found
        await self._enqueuer.enqueue(
            QueueName.ALERTS,
            JobName.SEND,
            {
                "alertId": str(alert.id),
                "anomalyId": str(alert.anomaly_id),
                "costRecordId": cost_record_id,
            },
            job_identity(event.id),
        )


def build_registry(handlers: OutboxEventHandlers) -> HandlerRegistry:
    return handlers.register_all(HandlerRegistry())
