from __future__ import annotations

import pytest
from pydantic import ValidationError

from outbox_dispatcher import container as container_module
from outbox_dispatcher.messaging import worker
from outbox_dispatcher.settings import Settings, settings


def test_default_job_retention_covers_redelivery_window() -> None:
    defaults = Settings()

    assert defaults.outbox_redelivery_window == 5 + 25 + 125 + 625 + 300 * 5
    assert defaults.JOB_RETENTION_COMPLETED_HOURS * 3600 >= defaults.outbox_redelivery_window


def test_job_retention_shorter_than_redelivery_window_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(JOB_RETENTION_COMPLETED_HOURS=0.5)


def test_worker_builds_container_without_api_app() -> None:
    assert worker.create_container is container_module.create_container

    built = container_module.create_container()

    assert built.config.OUTBOX_MAX_ATTEMPTS() == settings.OUTBOX_MAX_ATTEMPTS
    assert built.config.JOB_RESERVATION_TIMEOUT() == settings.JOB_RESERVATION_TIMEOUT
