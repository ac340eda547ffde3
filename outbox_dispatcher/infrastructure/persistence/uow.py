import contextlib
import dataclasses
from collections.abc import AsyncGenerator

from outbox_dispatcher.exceptions import AppError, UnitOfWorkError
from outbox_dispatcher.infrastructure.persistence.db import Database
from outbox_dispatcher.infrastructure.persistence.repositories.alerts import \
    AlertRepository
from outbox_dispatcher.infrastructure.persistence.repositories.jobs import \
    JobRepository
from outbox_dispatcher.infrastructure.persistence.repositories.outbox import \
    OutboxRepository


@dataclasses.dataclass
class Repository:
    """
    repo доступные для UOW
    """

    outbox: OutboxRepository
    jobs: JobRepository
    alerts: AlertRepository


class UnitOfWork:
    """
    Обработка жизненного цикла для commit/rollback логики.

    Продюсеры пишут бизнес-данные и событие outbox через один init(),
    поэтому они коммитятся или откатываются вместе.
    """

    def __init__(self, db: Database) -> None:
        self.db: Database = db

    @contextlib.asynccontextmanager
    async def init(self) -> AsyncGenerator[Repository, None]:
        async with self.db.connection() as conn:
            try:
                yield Repository(
                    outbox=OutboxRepository(conn, auto_commit=False),
                    jobs=JobRepository(conn, auto_commit=False),
                    alerts=AlertRepository(conn, auto_commit=False),
                )
            except AppError:
                await conn.rollback()
                raise
            except Exception as exc:
                await conn.rollback()
                raise UnitOfWorkError("UnitOfWork transaction failed") from exc
            else:
                await conn.commit()
