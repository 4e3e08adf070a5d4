from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import RedisSettings

from sitenotify.core.config import get_settings


logger = logging.getLogger(__name__)

DELIVER_JOB_NAME = "deliver_notification"

_queue_pool = None
_queue_pool_loop = None
_queue_lock = asyncio.Lock()


async def get_delivery_queue_pool():
    # Cache the ARQ Redis pool per event loop to avoid reconnect churn in API and worker code paths.
    global _queue_pool, _queue_pool_loop
    current_loop = asyncio.get_running_loop()
    if _queue_pool is not None and _queue_pool_loop == current_loop:
        return _queue_pool
    if _queue_pool is not None and _queue_pool_loop != current_loop:
        _queue_pool = None
    async with _queue_lock:
        if _queue_pool is None:
            settings = get_settings()
            _queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.notify_queue_name,
            )
            _queue_pool_loop = current_loop
    return _queue_pool


async def enqueue_notification_delivery(notification_id: str) -> bool:
    # Hand one notification to the worker; a false return leaves it PENDING for the requeue sweep.
    settings = get_settings()
    try:
        redis = await get_delivery_queue_pool()
        await redis.enqueue_job(
            DELIVER_JOB_NAME,
            notification_id,
            _queue_name=settings.notify_queue_name,
            _job_id=f"deliver:{notification_id}",
        )
        return True
    except Exception as exc:  # noqa: BLE001 - enqueue is best-effort; the scheduler requeues unclaimed rows
        logger.warning("delivery_enqueue_failed notification_id=%s", notification_id, exc_info=exc)
        return False
