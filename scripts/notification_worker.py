from __future__ import annotations

from arq import run_worker

from sitenotify.core.logging import configure_logging
from sitenotify.workers.notification_worker import WorkerSettings


def main() -> None:
    # Boot the delivery worker with its escalation scheduler.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
