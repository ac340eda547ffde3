from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class EventType(str, Enum):
    DOCUMENT_UPLOADED = "document.uploaded"
    DOCUMENT_EXTRACTION_RETRY = "document.extraction_retry"
    COST_RECORD_CREATED = "cost_record.created"
    ANOMALY_DETECTED = "anomaly.detected"
    ALERT_RETRY = "alert.retry"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> "EventType":
        return cls.UNKNOWN


class DispatchOutcome(str, Enum):
    HANDLED = "HANDLED"
    UNKNOWN = "UNKNOWN"


@dataclass(slots=True)
class OutboxEvent:
    id: int
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: Dict[str, Any]
    created_at: datetime
    processed_at: Optional[datetime]
    processing_at: Optional[datetime]
    attempts: int
    next_attempt_at: datetime
    error_message: Optional[str]

    @property
    def kind(self) -> EventType:
        return EventType(self.event_type)

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None

    def is_dead_lettered(self, max_attempts: int) -> bool:
        return self.processed_at is None and self.attempts >= max_attempts


@dataclass(slots=True)
class NewOutboxEvent:
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class OutboxStats:
    total: int
    processed: int
    pending: int
    in_flight: int
    dead_lettered: int


@dataclass(slots=True)
class PurgeResult:
    deleted_events: int
    deleted_jobs: int
    retention_days: int
