from __future__ import annotations

import argparse
import asyncio
import sys

from caseflow.core.logging import configure_logging
from caseflow.services.container import build_engine


async def _run_reset(tenant_id: str, service: str, actor_id: str) -> bool:
    engine = build_engine()
    return await engine.quota.reset_usage(tenant_id, service, actor_id=actor_id)


def main() -> None:
    # Admin reset of a tenant's usage counters and sticky notice flags.
    parser = argparse.ArgumentParser(description="Reset usage counters for a tenant and service")
    parser.add_argument("tenant_id")
    parser.add_argument("service")
    parser.add_argument("--actor-id", default="cli")
    args = parser.parse_args()

    configure_logging()
    reset = asyncio.run(_run_reset(args.tenant_id, args.service, args.actor_id))
    print(f"reset={str(reset).lower()}")
    if not reset:
        sys.exit(1)


if __name__ == "__main__":
    main()
