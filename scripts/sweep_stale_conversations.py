from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone

from caseflow.core.config import get_settings
from caseflow.core.logging import configure_logging
from caseflow.services.container import build_engine


async def _run_sweep(limit: int, dry_run: bool) -> None:
    engine = build_engine()
    if dry_run:
        settings = get_settings()
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.automation_idle_timeout_minutes)
        stale = await engine.manager.find_stale(cutoff, limit=limit)
        for view in stale:
            print(f"conversation_id={view.id} tenant_id={view.tenant_id} last_activity_at={view.last_activity_at.isoformat()}")
        print(f"stale_conversations={len(stale)}")
        return
    swept = await engine.manager.sweep_stale(limit=limit)
    print(f"escalated_conversations={swept}")


def main() -> None:
    # One idle sweep for operators; the worker runs the same sweep on a schedule.
    parser = argparse.ArgumentParser(description="Escalate collecting-info conversations past their idle timeout")
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    configure_logging()
    limit = args.limit or get_settings().sweep_batch_size
    asyncio.run(_run_sweep(limit, args.dry_run))


if __name__ == "__main__":
    main()
