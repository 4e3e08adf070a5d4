from __future__ import annotations

import uvicorn

from sitenotify.apps.api.main import create_app
from sitenotify.core.config import get_settings


def main() -> None:
    # Serve the notification API with env-driven bind settings for compose and local runs.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
