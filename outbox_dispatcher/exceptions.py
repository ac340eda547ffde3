from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


class AppError(Exception):
    """
    Исключение базового уровня приложения.

    Должно использоваться для всех ожидаемых, контролируемых сценариев ошибок в
    приложении.
    """
    def __init__(self, message: str = "", *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context or {}

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.message or self.__class__.__name__


class RepositoryError(AppError):
    """
    Базовая класс ошибок для persistence/repository слоя.
    """


class UnitOfWorkError(AppError):
    """
    Ошибка для UOW при которой падает транзакция
    """


class MessagingError(AppError):
    """
    Базовый класс ошибок для messaging / RabbitMQ операций.
    """


class OutboxError(AppError):
    """
    Базовый класс ошибок для операций над outbox.
    """


@dataclass
class OutboxEventNotFoundError(OutboxError):
    """
    Возникает, когда события outbox с заданным id не существует.
    """

    event_id: Any
    message: str = "Outbox event not found"

    def __post_init__(self) -> None:
        self.context = {"event_id": str(self.event_id)}


@dataclass
class ReplayNotAllowedError(OutboxError):
    """
    Повторный запуск разрешён только для событий в dead-letter.
    """

    event_id: Any
    reason: str
    message: str = "Outbox event cannot be replayed"

    def __post_init__(self) -> None:
        self.context = {"event_id": str(self.event_id), "reason": self.reason}


@dataclass
class InvalidEventPayloadError(OutboxError):
    """
    В payload события не хватает обязательных полей.
    """

    event_id: Any
    missing: str
    message: str = "Outbox event payload is invalid"

    def __post_init__(self) -> None:
        self.message = f"{self.message}: missing '{self.missing}'"
        self.context = {"event_id": str(self.event_id), "missing": self.missing}


@dataclass
class JobPublishError(MessagingError):
    """
    Возникает, когда задание не может быть опубликовано в очереди.
    """

    queue: str
    job_id: str
    message: str = "Failed to publish job to the message queue"

    def __post_init__(self) -> None:
        self.context = {"queue": self.queue, "job_id": self.job_id}


@dataclass
class JobConsumeError(MessagingError):
    """
    Вызывается, когда сообщение с заданием не может быть обработано.
    """

    raw_message: Any | None = None
    message: str = "Failed to consume job message from the queue"

    def __post_init__(self) -> None:
        if self.raw_message is not None:
            self.context = {"raw_message": str(self.raw_message)}


@dataclass
class JobReservationBusyError(MessagingError):
    """
    Идентификатор задания зарезервирован другим воркером, публикация ещё не
    подтверждена. Событие outbox будет повторено после паузы.
    """

    queue: str
    job_id: str
    message: str = "Job reservation is held by another publisher"

    def __post_init__(self) -> None:
        self.context = {"queue": self.queue, "job_id": self.job_id}
