"""
Определения схемы ORM SQLAlchemy для outbox, реестра заданий и связанных записей.
"""

import uuid
from datetime import datetime
from uuid import UUID as UUIDType

from sqlalchemy import (BigInteger, Boolean, DateTime, Enum, ForeignKey, Index,
                        Integer, String, Text, UniqueConstraint, Uuid, text)
from sqlalchemy.orm import Mapped, mapped_column

from outbox_dispatcher.clock import utcnow
from outbox_dispatcher.entity.alerts import AlertChannel, AlertStatus
from outbox_dispatcher.entity.jobs import JobStatus
from outbox_dispatcher.infrastructure.persistence.db import Base

# SQLite автоинкрементирует только INTEGER PRIMARY KEY
BigIntPk = BigInteger().with_variant(Integer(), "sqlite")


class OutboxEventModel(Base):
    __tablename__ = "outbox_events"
    __table_args__ = (
        Index(
            "outbox_events_claim_idx",
            "processed_at",
            "processing_at",
            "next_attempt_at",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    aggregate_type: Mapped[str] = mapped_column(String(255), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    processing_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class QueueJobModel(Base):
    __tablename__ = "queue_jobs"
    __table_args__ = (
        UniqueConstraint("queue", "job_id", name="queue_jobs_queue_job_id_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    queue: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    job_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus), nullable=False, default=JobStatus.WAITING
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class UserModel(Base):
    __tablename__ = "users"

    id: Mapped[UUIDType] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )


class AnomalyModel(Base):
    __tablename__ = "anomalies"

    id: Mapped[UUIDType] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    cost_record_id: Mapped[str] = mapped_column(String(255), nullable=False)
    severity: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)


class AlertModel(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        # один алерт на (аномалия, канал, получатель); у канальных алертов user_id NULL
        Index(
            "alerts_anomaly_channel_user_key",
            "anomaly_id",
            "channel",
            "user_id",
            unique=True,
        ),
        Index(
            "alerts_anomaly_channel_org_key",
            "anomaly_id",
            "channel",
            unique=True,
            postgresql_where=text("user_id IS NULL"),
            sqlite_where=text("user_id IS NULL"),
        ),
    )

    id: Mapped[UUIDType] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    anomaly_id: Mapped[UUIDType] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("anomalies.id"), nullable=False
    )
    user_id: Mapped[UUIDType | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    channel: Mapped[AlertChannel] = mapped_column(
        Enum(AlertChannel, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[AlertStatus] = mapped_column(
        Enum(AlertStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=AlertStatus.PENDING,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
