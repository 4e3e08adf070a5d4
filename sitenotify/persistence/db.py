from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from pathlib import Path
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from sitenotify.core.config import get_settings
from sitenotify.domain.models import Base


logger = logging.getLogger(__name__)

settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Configure bounded asyncpg pools for predictable latency under delivery bursts.
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncSession:
    async with SessionLocal() as session:
        yield session


async def create_schema(target: AsyncEngine | None = None) -> None:
    # Bootstrap tables for test databases; deployed schemas come from alembic migrations.
    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def head_revision() -> str | None:
    # Resolve the repository head from the migration files, newest file last.
    versions = sorted((Path(__file__).parent / "alembic" / "versions").glob("*.py"))
    if not versions:
        return None
    for line in versions[-1].read_text(encoding="utf-8").splitlines():
        if line.startswith("revision ="):
            return line.split("=", 1)[1].strip().strip('"')
    return None


async def current_revision(target: AsyncEngine | None = None) -> str | None:
    async with (target or engine).connect() as conn:
        has_version_table = await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table("alembic_version"))
        if not has_version_table:
            return None
        return (await conn.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))).scalar_one_or_none()


async def check_schema_revision(target: AsyncEngine | None = None) -> bool:
    # Schemas are owned by alembic; services only report when the database lags the code.
    db_revision = await current_revision(target)
    head = head_revision()
    if db_revision != head:
        logger.warning(
            "schema_revision_mismatch db_revision=%s head_revision=%s action=alembic_upgrade_head",
            db_revision,
            head,
        )
        return False
    return True
