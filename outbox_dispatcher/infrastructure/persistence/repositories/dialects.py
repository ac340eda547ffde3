from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from outbox_dispatcher.exceptions import RepositoryError

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def upsert_insert(session: AsyncSession):
    """
    insert() диалекта текущей сессии, поддерживающий ON CONFLICT DO NOTHING.
    """
    dialect = session.get_bind().dialect.name
    try:
        return _UPSERT_INSERTS[dialect]
    except KeyError:
        raise RepositoryError(
            f"Idempotent insert is not supported for dialect {dialect}"
        ) from None
