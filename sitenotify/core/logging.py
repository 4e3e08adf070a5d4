from __future__ import annotations

import logging

from sitenotify.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Apply one log format and level to the API, worker and scripts.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    logging.getLogger().setLevel(level)
    # Keep connection-level chatter out of delivery logs.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
