from contextlib import asynccontextmanager
from typing import AsyncIterator

import fastapi

from outbox_dispatcher.api.handlers.outbox.outbox_handler import router
from outbox_dispatcher.container import Container, create_container


@asynccontextmanager
async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
    yield
    container: Container = app.container
    await container.infrastructure.job_queue().close()
    await container.infrastructure.db().dispose()


def create_app() -> fastapi.FastAPI:
    app = fastapi.FastAPI(title="Outbox dispatcher", lifespan=lifespan)
    app.container = create_container()
    app.include_router(router)
    return app


app = create_app()
