from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sitenotify.domain.models import Notification
from sitenotify.domain.state import (
    STATUS_DELIVERED,
    STATUS_PENDING,
    source_statuses,
)


async def get(session: AsyncSession, notification_id: str) -> Notification | None:
    return await session.get(Notification, notification_id, populate_existing=True)


async def transition(
    session: AsyncSession,
    notification_id: str,
    *,
    target: str,
    values: dict[str, Any] | None = None,
    expected: Iterable[str] | None = None,
) -> bool:
    # Compare-and-swap the status so concurrent paths can never regress or skip a state.
    allowed = source_statuses(target)
    if expected is not None:
        allowed = allowed & frozenset(expected)
    if not allowed:
        return False
    result = await session.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.status.in_(sorted(allowed)))
        .values(status=target, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _claim_open(stale_before: datetime | None):
    if stale_before is None:
        return Notification.delivery_started_at.is_(None)
    return or_(Notification.delivery_started_at.is_(None), Notification.delivery_started_at <= stale_before)


async def claim_delivery(
    session: AsyncSession,
    notification_id: str,
    *,
    now: datetime,
    stale_before: datetime | None = None,
) -> bool:
    # Claim a PENDING row for a single delivery run; losers skip instead of retrying in parallel.
    result = await session.execute(
        update(Notification)
        .where(
            Notification.id == notification_id,
            Notification.status == STATUS_PENDING,
            _claim_open(stale_before),
        )
        .values(delivery_started_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def release_claim(session: AsyncSession, notification_id: str) -> bool:
    # Hand an interrupted run's claim back so the row can be picked up again.
    result = await session.execute(
        update(Notification)
        .where(
            Notification.id == notification_id,
            Notification.status == STATUS_PENDING,
            Notification.delivery_started_at.is_not(None),
        )
        .values(delivery_started_at=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_attempt(session: AsyncSession, notification_id: str) -> None:
    # Count every transport call, including fallback channels.
    await session.execute(
        update(Notification)
        .where(Notification.id == notification_id)
        .values(delivery_attempts=Notification.delivery_attempts + 1)
        .execution_options(synchronize_session=False)
    )


async def list_notifications(
    session: AsyncSession,
    *,
    now: datetime,
    recipient_id: str | None = None,
    company_id: str | None = None,
    status: str | None = None,
    notification_type: str | None = None,
    priority: str | None = None,
    unacknowledged_only: bool = False,
    include_expired: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[Notification]:
    # Build listing predicates in one place so permission scoping is applied uniformly.
    query = select(Notification)
    if recipient_id:
        query = query.where(Notification.recipient_id == recipient_id)
    if company_id:
        query = query.where(Notification.company_id == company_id)
    if status:
        query = query.where(Notification.status == status)
    if notification_type:
        query = query.where(Notification.type == notification_type)
    if priority:
        query = query.where(Notification.priority == priority)
    if unacknowledged_only:
        query = query.where(
            Notification.requires_acknowledgment.is_(True),
            Notification.acknowledged_at.is_(None),
        )
    if not include_expired:
        query = query.where(or_(Notification.expires_at.is_(None), Notification.expires_at > now))
    query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).offset(offset)
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_overdue_acknowledgments(
    session: AsyncSession,
    *,
    now: datetime,
    priorities: Iterable[str],
    limit: int = 100,
) -> list[Notification]:
    # Select delivered rows whose acknowledgment deadline has passed; escalation messages never re-escalate.
    result = await session.execute(
        select(Notification)
        .where(
            Notification.status == STATUS_DELIVERED,
            Notification.requires_acknowledgment.is_(True),
            Notification.acknowledged_at.is_(None),
            Notification.deadline_at <= now,
            Notification.priority.in_(list(priorities)),
            Notification.escalation_of.is_(None),
        )
        .order_by(Notification.deadline_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_unclaimed_pending(
    session: AsyncSession,
    *,
    created_before: datetime,
    stale_before: datetime | None = None,
    limit: int = 100,
) -> list[str]:
    # Find PENDING rows without a live claim: lost hand-offs and runs that died mid-delivery.
    result = await session.execute(
        select(Notification.id)
        .where(
            Notification.status == STATUS_PENDING,
            _claim_open(stale_before),
            Notification.created_at <= created_before,
        )
        .order_by(Notification.created_at.asc())
        .limit(limit)
    )
    return [str(row) for row in result.scalars().all()]


async def list_undelivered_past_deadline(
    session: AsyncSession,
    *,
    now: datetime,
    priorities: Iterable[str],
    limit: int = 100,
) -> list[Notification]:
    # Select rows still PENDING after their deadline, whether or not a run holds the claim.
    result = await session.execute(
        select(Notification)
        .where(
            Notification.status == STATUS_PENDING,
            Notification.deadline_at <= now,
            Notification.priority.in_(list(priorities)),
            Notification.escalation_of.is_(None),
        )
        .order_by(Notification.deadline_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())
