from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from sitenotify.core.config import get_settings
from sitenotify.core.errors import NotificationNotFoundError
from sitenotify.core.logging import configure_logging
from sitenotify.persistence.db import check_schema_revision
from sitenotify.services.engine import get_engine

logger = logging.getLogger(__name__)


async def deliver_notification(ctx, notification_id: str) -> str:
    # Consume one queued notification id; the coordinator claim makes duplicate jobs harmless.
    try:
        outcome = await get_engine().coordinator.deliver(notification_id)
    except NotificationNotFoundError:
        logger.warning("delivery_job_missing_notification notification_id=%s", notification_id)
        return "missing"
    if not outcome.claimed:
        return "skipped"
    return outcome.status


async def run_escalation_pass() -> tuple[int, int]:
    # One scheduler tick: escalate overdue acknowledgments, then recover lost hand-offs.
    engine = get_engine()
    settings = engine.settings
    escalated = await engine.coordinator.check_acknowledgment_deadlines()
    requeued = 0
    if settings.notify_delivery_mode == "queue":
        requeued = await engine.coordinator.requeue_unclaimed(
            older_than_s=max(1, int(settings.notify_escalation_poll_interval_s)) * 2,
            limit=max(1, int(settings.notify_escalation_batch_size)),
        )
    if escalated or requeued:
        logger.info("escalation_pass_completed escalated=%s requeued=%s", len(escalated), requeued)
    return len(escalated), requeued


async def _scheduler_loop() -> None:
    # Scan on a fixed cadence so acknowledgment deadlines are enforced even when API traffic is idle.
    interval_s = max(1, int(get_settings().notify_escalation_poll_interval_s))
    while True:
        try:
            await run_escalation_pass()
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("escalation scheduler pass failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    await check_schema_revision()
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop())


async def _shutdown(ctx) -> None:
    # Cancel scheduler task on shutdown to avoid dangling coroutines in tests and local runs.
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_queue_name
    max_tries = max(1, int(settings.notify_worker_max_tries))
    functions = [deliver_notification]
    on_startup = _startup
    on_shutdown = _shutdown
