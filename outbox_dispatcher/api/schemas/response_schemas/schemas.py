from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from outbox_dispatcher.entity.jobs import QueueStats
from outbox_dispatcher.entity.outbox import (OutboxEvent, OutboxStats,
                                             PurgeResult)


class OutboxEventResponse(BaseModel):
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

    @staticmethod
    def from_entity(event: OutboxEvent) -> "OutboxEventResponse":
        return OutboxEventResponse(**asdict(event))


class DeadLetterListResponse(BaseModel):
    total: int
    items: List[OutboxEventResponse]


class OutboxStatsResponse(BaseModel):
    total: int
    processed: int
    pending: int
    in_flight: int
    dead_lettered: int

    @staticmethod
    def from_entity(stats: OutboxStats) -> "OutboxStatsResponse":
        return OutboxStatsResponse(**asdict(stats))


class QueueStatsResponse(BaseModel):
    queue: str
    pending: int
    waiting: int
    active: int
    completed: int
    failed: int

    @staticmethod
    def from_entity(stats: QueueStats) -> "QueueStatsResponse":
        return QueueStatsResponse(**asdict(stats))


class StatsResponse(BaseModel):
    outbox: OutboxStatsResponse
    queues: List[QueueStatsResponse]


class PurgeResponse(BaseModel):
    deleted: int
    deleted_jobs: int
    retention_days: int

    @staticmethod
    def from_entity(result: PurgeResult) -> "PurgeResponse":
        return PurgeResponse(
            deleted=result.deleted_events,
            deleted_jobs=result.deleted_jobs,
            retention_days=result.retention_days,
        )
