from __future__ import annotations

import argparse
import asyncio
import sys

from sitenotify.core.logging import configure_logging
from sitenotify.services.engine import get_engine


def _build_parser() -> argparse.ArgumentParser:
    # Only meaningful with RESILIENCE_BACKEND=redis; local breaker state lives inside each process.
    parser = argparse.ArgumentParser(description="Force a service circuit breaker back to CLOSED")
    parser.add_argument("service_name", help="Breaker to reset, e.g. PUSH")
    parser.add_argument("--actor-id", default="reset_circuit_breaker", help="Operator id recorded in the audit")
    return parser


async def _reset(service_name: str, actor_id: str) -> int:
    engine = get_engine()
    normalized = service_name.strip().upper()
    if not await engine.breakers.reset(normalized, actor_id=actor_id):
        print(f"unknown service: {normalized}", file=sys.stderr)
        return 1
    snapshot = await engine.breakers.get_status(normalized)
    print(f"service={normalized} state={snapshot.state}")
    return 0


def main() -> None:
    configure_logging()
    args = _build_parser().parse_args()
    raise SystemExit(asyncio.run(_reset(args.service_name, args.actor_id)))


if __name__ == "__main__":
    main()
