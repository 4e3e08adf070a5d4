from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sitenotify.domain.models import AuditRecord, Notification
from sitenotify.domain.state import EVENT_ESCALATION


async def list_for_notification(session: AsyncSession, notification_id: str) -> list[AuditRecord]:
    # Return the full trail in replay order; ids break ties between equal timestamps.
    result = await session.execute(
        select(AuditRecord)
        .where(AuditRecord.notification_id == notification_id)
        .order_by(AuditRecord.timestamp.asc(), AuditRecord.id.asc())
    )
    return list(result.scalars().all())


async def list_events(
    session: AsyncSession,
    *,
    event: str | None = None,
    service_name: str | None = None,
    error_code: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 100,
) -> list[AuditRecord]:
    # Filter audit rows for ops investigations, newest first.
    query = select(AuditRecord)
    if event:
        query = query.where(AuditRecord.event == event)
    if service_name:
        query = query.where(AuditRecord.service_name == service_name)
    if error_code:
        query = query.where(AuditRecord.error_code == error_code)
    if since:
        query = query.where(AuditRecord.timestamp >= since)
    if until:
        query = query.where(AuditRecord.timestamp <= until)
    query = query.order_by(AuditRecord.timestamp.desc(), AuditRecord.id.desc()).limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def count_by_event(
    session: AsyncSession,
    *,
    since: datetime,
    events: Iterable[str],
) -> list[tuple[str, str | None, str | None, int]]:
    # Aggregate (event, service, error code) counts for error statistics.
    result = await session.execute(
        select(
            AuditRecord.event,
            AuditRecord.service_name,
            AuditRecord.error_code,
            func.count(AuditRecord.id),
        )
        .where(AuditRecord.timestamp >= since, AuditRecord.event.in_(list(events)))
        .group_by(AuditRecord.event, AuditRecord.service_name, AuditRecord.error_code)
    )
    return [(row[0], row[1], row[2], int(row[3])) for row in result.all()]


async def list_escalations(
    session: AsyncSession,
    *,
    since: datetime,
    company_id: str | None = None,
) -> list[AuditRecord]:
    # Escalation rows in replay order, optionally narrowed to one company's notifications.
    query = select(AuditRecord).where(AuditRecord.event == EVENT_ESCALATION, AuditRecord.timestamp >= since)
    if company_id is not None:
        query = query.join(Notification, Notification.id == AuditRecord.notification_id).where(
            Notification.company_id == company_id
        )
    query = query.order_by(AuditRecord.timestamp.asc(), AuditRecord.id.asc())
    result = await session.execute(query)
    return list(result.scalars().all())
