"""
Контейнер для usecase слоя
"""

from dependency_injector import containers, providers

from outbox_dispatcher.infrastructure.persistence.uow import UnitOfWork
from outbox_dispatcher.usecase.outbox import OutboxUseCase


class UsecaseContainer(containers.DeclarativeContainer):

    config = providers.Configuration()

    uow: providers.Dependency[UnitOfWork] = providers.Dependency()

    outbox_usecase = providers.Factory(
        OutboxUseCase,
        uow=uow,
        max_attempts=config.OUTBOX_MAX_ATTEMPTS,
        claim_timeout=config.OUTBOX_CLAIM_TIMEOUT,
        retention_days=config.OUTBOX_RETENTION_DAYS,
        retention_batch_size=config.OUTBOX_RETENTION_BATCH_SIZE,
        job_completed_retention_hours=config.JOB_RETENTION_COMPLETED_HOURS,
        job_failed_retention_days=config.JOB_RETENTION_FAILED_DAYS,
    )
