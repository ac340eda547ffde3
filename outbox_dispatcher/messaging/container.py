"""
Контейнер для outbox-диспетчера и очередей заданий
"""

from dependency_injector import containers, providers

from outbox_dispatcher.infrastructure.messaging.job_queue import RabbitJobQueue
from outbox_dispatcher.infrastructure.persistence.db import Database
from outbox_dispatcher.messaging.enqueuer import IdempotentJobEnqueuer
from outbox_dispatcher.messaging.handlers import (OutboxEventHandlers,
                                                  build_registry)
from outbox_dispatcher.messaging.poller import OutboxPoller
from outbox_dispatcher.messaging.retry import RetryPolicy


class MessagingContainer(containers.DeclarativeContainer):
    config = providers.Configuration()

    db: providers.Dependency[Database] = providers.Dependency()
    job_queue: providers.Dependency[RabbitJobQueue] = providers.Dependency()

    enqueuer = providers.Singleton(
        IdempotentJobEnqueuer,
        db=db,
        transport=job_queue,
        reservation_timeout=config.JOB_RESERVATION_TIMEOUT,
    )

    handlers = providers.Singleton(
        OutboxEventHandlers,
        db=db,
        enqueuer=enqueuer,
        alert_channels=config.ALERT_CHANNELS,
        notify_severities=config.ALERT_NOTIFY_SEVERITIES,
        recipient_roles=config.ALERT_RECIPIENT_ROLES,
        recipient_limit=config.ALERT_RECIPIENT_LIMIT,
        webhooks=providers.Dict(
            slack=config.SLACK_WEBHOOK_URL,
            teams=config.TEAMS_WEBHOOK_URL,
        ),
    )

    registry = providers.Singleton(build_registry, handlers=handlers)

    retry_policy = providers.Singleton(
        RetryPolicy,
        base=config.OUTBOX_BACKOFF_BASE,
        unit_seconds=config.OUTBOX_BACKOFF_UNIT,
        max_attempts=config.OUTBOX_MAX_ATTEMPTS,
        jitter=config.OUTBOX_BACKOFF_JITTER,
    )

    poller = providers.Singleton(
        OutboxPoller,
        db=db,
        registry=registry,
        retry_policy=retry_policy,
        batch_size=config.OUTBOX_BATCH_SIZE,
        poll_interval=config.OUTBOX_POLL_INTERVAL,
        claim_timeout=config.OUTBOX_CLAIM_TIMEOUT,
    )
