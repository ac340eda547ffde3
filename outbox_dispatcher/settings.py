from typing import List, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DB_HOST: str = "localhost"
    DB_PORT: str = "5432"
    DB_NAME: str = "outbox"
    DB_USER: str = "postgres"
    DB_PASS: str = "postgres"
    DB_URL: Optional[str] = None

    RABBIT_HOST: str = "localhost"
    RABBIT_PORT: int = 5672
    RABBIT_USER: str = "guest"
    RABBIT_PASS: str = "guest"
    RABBIT_VHOST: str = "/"

    OUTBOX_POLL_INTERVAL: float = 1.0
    OUTBOX_BATCH_SIZE: int = 100
    OUTBOX_MAX_ATTEMPTS: int = 5
    OUTBOX_CLAIM_TIMEOUT: float = 300.0
    OUTBOX_BACKOFF_BASE: float = 5.0
    OUTBOX_BACKOFF_UNIT: float = 1.0
    OUTBOX_BACKOFF_JITTER: float = 0.0
    OUTBOX_RETENTION_DAYS: int = 30
    OUTBOX_RETENTION_BATCH_SIZE: int = 1000

    JOB_RESERVATION_TIMEOUT: float = 60.0
    JOB_RETENTION_COMPLETED_HOURS: float = 24.0
    JOB_RETENTION_FAILED_DAYS: float = 7.0

    ALERT_CHANNELS: List[str] = ["email"]
    ALERT_NOTIFY_SEVERITIES: List[str] = ["warning", "critical"]
    ALERT_RECIPIENT_ROLES: List[str] = ["admin", "manager"]
    ALERT_RECIPIENT_LIMIT: int = 5
    SLACK_WEBHOOK_URL: str = ""
    TEAMS_WEBHOOK_URL: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def outbox_redelivery_window(self) -> float:
        """
        Максимальное время в секундах, в течение которого событие outbox ещё
        может быть доставлено повторно: все паузы backoff плюс истечение
        захвата на каждой попытке.
        """
        backoff = sum(
            self.OUTBOX_BACKOFF_BASE ** attempt * self.OUTBOX_BACKOFF_UNIT
            for attempt in range(1, self.OUTBOX_MAX_ATTEMPTS)
        )
        return backoff + self.OUTBOX_CLAIM_TIMEOUT * self.OUTBOX_MAX_ATTEMPTS

    @model_validator(mode="after")
    def check_job_retention(self) -> "Settings":
        # запись реестра не должна исчезнуть раньше, чем событие перестанет доставляться
        shortest = min(
            self.JOB_RETENTION_COMPLETED_HOURS * 3600,
            self.JOB_RETENTION_FAILED_DAYS * 86400,
        )
        if shortest < self.outbox_redelivery_window:
            raise ValueError(
                "Job ledger retention must be at least the outbox redelivery window "
                f"({self.outbox_redelivery_window:.0f}s)"
            )
        return self


settings = Settings()
