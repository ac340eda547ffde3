import logging
import os
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List

from pythonjsonlogger import json

if TYPE_CHECKING:
    from outbox_dispatcher.entity.outbox import OutboxEvent

LOGGER_NAME = "outbox_dispatcher"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# пустое значение отключает запись в файл
LOG_FILE = os.getenv("LOG_FILE", "logs/app.log")


class CustomJSONFormatter(json.JsonFormatter):
    """
    JSON-запись с timestamp в UTC, уровнем в верхнем регистре и pid процесса:
    несколько поллеров пишут в один поток логов.
    """

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(timezone.utc).isoformat(
                timespec="microseconds"
            )
        log_record["level"] = (log_record.get("level") or record.levelname).upper()
        log_record.setdefault("pid", record.process)


def _build_logger() -> logging.Logger:
    app_logger = logging.getLogger(LOGGER_NAME)
    if app_logger.handlers:
        return app_logger

    formatter = CustomJSONFormatter(
        "%(timestamp)s %(level)s %(message)s %(module)s %(funcName)s"
    )
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        os.makedirs(os.path.dirname(LOG_FILE) or ".", exist_ok=True)
        handlers.append(logging.FileHandler(LOG_FILE))

    for handler in handlers:
        handler.setFormatter(formatter)
        app_logger.addHandler(handler)

    app_logger.setLevel(LOG_LEVEL)
    app_logger.propagate = False
    return app_logger


logger: logging.Logger = _build_logger()


def event_extra(event: "OutboxEvent", **fields: Any) -> Dict[str, Any]:
    """Поля extra для записей о событии outbox."""
    return {"event_id": event.id, "event_type": event.event_type, **fields}
