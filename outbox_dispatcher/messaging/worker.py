from __future__ import annotations

import asyncio
import signal

from outbox_dispatcher.container import create_container
from outbox_dispatcher.logger import logger


async def main(*, create_schema: bool = False) -> None:
    """
    Запуск поллера outbox как отдельного процесса.
    Останавливается по SIGINT/SIGTERM, дождавшись текущей пачки.
    """
    container = create_container()
    db = container.infrastructure.db()
    job_queue = container.infrastructure.job_queue()
    poller = container.messaging.poller()

    if create_schema:
        await db.create_schema()

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await poller.start()
    try:
        await stop_requested.wait()
        logger.info("Shutdown signal received, stopping outbox poller")
    finally:
        await poller.stop()
        await job_queue.close()
        await db.dispose()
        logger.info("Outbox worker stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
