from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from sitenotify.domain.models import DailyLimitCounter


def _insert_missing(session: AsyncSession, *, recipient_id: str, day: date, now: datetime):
    # Seed a zero counter without racing concurrent creators.
    dialect = session.get_bind().dialect.name
    insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
    return (
        insert_fn(DailyLimitCounter)
        .values(recipient_id=recipient_id, day=day, count=0, updated_at=now)
        .on_conflict_do_nothing(index_elements=["recipient_id", "day"])
    )


async def try_consume(
    session: AsyncSession,
    *,
    recipient_id: str,
    day: date,
    limit: int,
    now: datetime,
) -> bool:
    # Atomically increment-and-check; a false return leaves the counter untouched.
    if limit <= 0:
        return False
    await session.execute(_insert_missing(session, recipient_id=recipient_id, day=day, now=now))
    result = await session.execute(
        update(DailyLimitCounter)
        .where(
            DailyLimitCounter.recipient_id == recipient_id,
            DailyLimitCounter.day == day,
            DailyLimitCounter.count < limit,
        )
        .values(count=DailyLimitCounter.count + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def count_bypass(session: AsyncSession, *, recipient_id: str, day: date, now: datetime) -> None:
    # Count exempt deliveries so the daily total stays accurate without enforcing the ceiling.
    await session.execute(_insert_missing(session, recipient_id=recipient_id, day=day, now=now))
    await session.execute(
        update(DailyLimitCounter)
        .where(DailyLimitCounter.recipient_id == recipient_id, DailyLimitCounter.day == day)
        .values(count=DailyLimitCounter.count + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )


async def get_count(session: AsyncSession, *, recipient_id: str, day: date) -> int:
    result = await session.execute(
        select(DailyLimitCounter.count).where(
            DailyLimitCounter.recipient_id == recipient_id,
            DailyLimitCounter.day == day,
        )
    )
    value = result.scalar_one_or_none()
    return int(value) if value is not None else 0
