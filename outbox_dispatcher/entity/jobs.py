from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

JOB_ID_PREFIX = "outbox_"


class QueueName(str, Enum):
    EXTRACTION = "extraction"
    ANOMALY_DETECTION = "anomaly-detection"
    ALERTS = "alerts"
    AGGREGATION = "aggregation"


class JobName(str, Enum):
    EXTRACT = "extract"
    DETECT = "detect"
    SEND = "send"
    AGGREGATE = "aggregate"


class JobStatus(str, Enum):
    # идентификатор зарезервирован, публикация ещё не подтверждена
    PENDING = "PENDING"
    WAITING = "WAITING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def job_identity(event_id: int, discriminator: Optional[Any] = None) -> str:
    """
    Детерминированный идентификатор задания, производный от id события outbox.
    """
    identity = f"{JOB_ID_PREFIX}{event_id}"
    if discriminator is not None:
        identity = f"{identity}_{discriminator}"
    return identity


@dataclass(slots=True)
class Job:
    queue: str
    name: str
    job_id: str
    payload: Dict[str, Any]


@dataclass(slots=True)
class JobRecord:
    id: int
    queue: str
    name: str
    job_id: str
    status: JobStatus
    attempts: int
    error: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class QueueStats:
    queue: str
    pending: int = 0
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
