from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, Session as OrmSession, mapped_column
from sqlalchemy.types import TypeDecorator

from sitenotify.core.errors import AuditImmutableError


# Use JSONB on Postgres and plain JSON elsewhere so SQLite test databases share one schema.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    # Normalize timestamps to aware UTC values; SQLite drops tzinfo on round-trips.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
        Index("ix_notifications_status_deadline", "status", "deadline_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    type: Mapped[str] = mapped_column(String)
    priority: Mapped[str] = mapped_column(String)
    sender_id: Mapped[str] = mapped_column(String)
    recipient_id: Mapped[str] = mapped_column(String, index=True)
    company_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Title/message are stored only as sealed AES-GCM payloads.
    title_sealed: Mapped[dict[str, Any]] = mapped_column(JsonType)
    message_sealed: Mapped[dict[str, Any]] = mapped_column(JsonType)
    content_hash: Mapped[str] = mapped_column(String)
    action_data: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime())
    deadline_at: Mapped[datetime] = mapped_column(UTCDateTime())
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    requires_acknowledgment: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String, index=True)
    delivery_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Set once a delivery run claims the row so retries never run in parallel.
    delivery_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    delivered_via: Mapped[str | None] = mapped_column(String, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    escalation_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    escalation_target_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Points an escalation message at the notification it escalates.
    escalation_of: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    acknowledged_by: Mapped[str | None] = mapped_column(String, nullable=True)


class AuditRecord(Base):
    __tablename__ = "notification_audit"
    __table_args__ = (
        Index("ix_notification_audit_notification_ts", "notification_id", "timestamp", "id"),
        Index("ix_notification_audit_event_ts", "event", "timestamp"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    notification_id: Mapped[str | None] = mapped_column(String, nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event: Mapped[str] = mapped_column(String)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime())
    # Resulting notification status for lifecycle events; null for breaker/retry/alert rows.
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    service_name: Mapped[str | None] = mapped_column(String, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JsonType, default=dict)


class DailyLimitCounter(Base):
    __tablename__ = "daily_limit_counters"

    recipient_id: Mapped[str] = mapped_column(String, primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime())


class SupervisorAssignment(Base):
    __tablename__ = "supervisor_assignments"

    # One direct supervisor per worker; escalations for that worker go here first.
    recipient_id: Mapped[str] = mapped_column(String, primary_key=True)
    supervisor_id: Mapped[str] = mapped_column(String)
    company_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime())


class CompanyEscalationContact(Base):
    __tablename__ = "company_escalation_contacts"

    company_id: Mapped[str] = mapped_column(String, primary_key=True)
    contact_id: Mapped[str] = mapped_column(String, primary_key=True)
    # supervisor, company_admin or admin; supervisors are preferred.
    role: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime())


@event.listens_for(AuditRecord, "before_update")
def _reject_audit_update(mapper, connection, target) -> None:  # noqa: ANN001
    raise AuditImmutableError("audit records cannot be updated")


@event.listens_for(AuditRecord, "before_delete")
def _reject_audit_delete(mapper, connection, target) -> None:  # noqa: ANN001
    raise AuditImmutableError("audit records cannot be deleted")


@event.listens_for(OrmSession, "do_orm_execute")
def _reject_bulk_audit_mutation(orm_execute_state) -> None:  # noqa: ANN001
    # Bulk UPDATE/DELETE statements bypass mapper events, so guard them at execution time.
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and mapper.class_ is AuditRecord:
        raise AuditImmutableError("audit records are append-only")
