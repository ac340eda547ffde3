from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID


class AlertChannel(str, Enum):
    EMAIL = "email"
    IN_APP = "in_app"
    SLACK = "slack"
    TEAMS = "teams"

    @property
    def is_per_user(self) -> bool:
        return self in {AlertChannel.EMAIL, AlertChannel.IN_APP}


class AlertStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(slots=True)
class Recipient:
    user_id: UUID
    email: str


@dataclass(slots=True)
class Alert:
    id: UUID
    anomaly_id: UUID
    user_id: Optional[UUID]
    channel: AlertChannel
    recipient: str
    subject: str
    body: str
    status: AlertStatus
    created_at: datetime


@dataclass(slots=True)
class NewAlert:
    anomaly_id: UUID
    user_id: Optional[UUID]
    channel: AlertChannel
    recipient: str
    subject: str
    body: str
