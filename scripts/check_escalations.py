from __future__ import annotations

import asyncio

from sitenotify.core.logging import configure_logging
from sitenotify.persistence.db import check_schema_revision
from sitenotify.workers.notification_worker import run_escalation_pass


async def check() -> None:
    # Run one acknowledgment-deadline sweep, e.g. from cron when no worker is deployed.
    configure_logging()
    await check_schema_revision()
    escalated, requeued = await run_escalation_pass()
    print(f"escalated={escalated} requeued={requeued}")


if __name__ == "__main__":
    asyncio.run(check())
