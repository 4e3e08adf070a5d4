from __future__ import annotations

from datetime import datetime, timezone
import logging
import time
from typing import Any, Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sitenotify.core.errors import NotificationStateError
from sitenotify.domain.models import AuditRecord
from sitenotify.domain.state import STATUS_PENDING, can_transition
from sitenotify.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)

# Notification text never belongs in audit metadata, whatever key it arrives under.
_SENSITIVE_KEY_PATTERNS = ["title", "body", "content", "plaintext", "token", "secret", "password", "authorization"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class AuditLog:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        if session_factory is None:
            from sitenotify.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._time = time_source or time.time

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._time(), timezone.utc)

    async def record(
        self,
        *,
        event: str,
        notification_id: str | None = None,
        worker_id: str | None = None,
        status: str | None = None,
        service_name: str | None = None,
        error_code: str | None = None,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
        session: AsyncSession | None = None,
        commit: bool | None = None,
        best_effort: bool = True,
    ) -> None:
        # Append one audit row; failures are logged so they never mask the error being audited.
        row = AuditRecord(
            notification_id=notification_id,
            worker_id=worker_id,
            event=event,
            timestamp=timestamp or self.now(),
            status=status,
            service_name=service_name,
            error_code=error_code,
            metadata_json=sanitize_metadata(metadata or {}),
        )

        if session is None:
            async with self._session_factory() as audit_session:
                try:
                    audit_session.add(row)
                    await audit_session.commit()
                except SQLAlchemyError as exc:
                    await audit_session.rollback()
                    self._report_failure(event, notification_id, exc, best_effort)
            return

        resolved_commit = commit if commit is not None else False
        try:
            session.add(row)
            if resolved_commit:
                await session.commit()
        except SQLAlchemyError as exc:
            if resolved_commit:
                await session.rollback()
            self._report_failure(event, notification_id, exc, best_effort)

    def _report_failure(self, event: str, notification_id: str | None, exc: Exception, best_effort: bool) -> None:
        level = logger.warning if best_effort else logger.error
        level(
            "audit_record_write_failed event=%s notification_id=%s",
            event,
            notification_id,
            exc_info=exc,
        )
        if not best_effort:
            raise exc

    async def trail(self, notification_id: str) -> list[AuditRecord]:
        async with self._session_factory() as session:
            return await audit_repo.list_for_notification(session, notification_id)

    async def list_events(self, **filters: Any) -> list[AuditRecord]:
        async with self._session_factory() as session:
            return await audit_repo.list_events(session, **filters)

    async def count_by_event(
        self, *, since: datetime, events: Iterable[str]
    ) -> list[tuple[str, str | None, str | None, int]]:
        async with self._session_factory() as session:
            return await audit_repo.count_by_event(session, since=since, events=events)


def replay_status_path(records: Iterable[AuditRecord]) -> list[str]:
    # Rebuild the lifecycle path from an ordered trail and reject skips or regressions.
    path: list[str] = []
    for record in records:
        if record.status is None:
            continue
        if not path:
            if record.status != STATUS_PENDING:
                raise NotificationStateError(f"trail starts at {record.status}, expected {STATUS_PENDING}")
            path.append(record.status)
            continue
        if record.status == path[-1]:
            continue
        if not can_transition(path[-1], record.status):
            raise NotificationStateError(f"illegal transition {path[-1]} -> {record.status}")
        path.append(record.status)
    return path


def serialize_record(record: AuditRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "notification_id": record.notification_id,
        "worker_id": record.worker_id,
        "event": record.event,
        "timestamp": record.timestamp.isoformat() if record.timestamp else None,
        "status": record.status,
        "service_name": record.service_name,
        "error_code": record.error_code,
        "metadata": record.metadata_json or {},
    }
