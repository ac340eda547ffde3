"""
Контейнер для infrastructure/services уровня.
"""

from typing import Optional

from dependency_injector import containers, providers

from outbox_dispatcher.infrastructure.messaging.job_queue import RabbitJobQueue
from outbox_dispatcher.infrastructure.persistence.db import Database
from outbox_dispatcher.infrastructure.persistence.uow import UnitOfWork


def get_db_url(
    pg_user: str,
    pg_password: str,
    pg_host: str,
    pg_port: str,
    pg_db: str,
    db_url: Optional[str] = None,
) -> str:
    if db_url:
        return db_url
    return f"postgresql+asyncpg://{pg_user}:{pg_password}@{pg_host}:{pg_port}/{pg_db}"


class InfrastructureContainer(containers.DeclarativeContainer):

    config = providers.Configuration()

    db = providers.Singleton(
        Database,
        db_url=providers.Resource(
            get_db_url,
            pg_user=config.DB_USER,
            pg_password=config.DB_PASS,
            pg_host=config.DB_HOST,
            pg_port=config.DB_PORT,
            pg_db=config.DB_NAME,
            db_url=config.DB_URL,
        ),
    )

    uow = providers.Singleton(
        UnitOfWork,
        db=db,
    )

    job_queue = providers.Singleton(RabbitJobQueue)
