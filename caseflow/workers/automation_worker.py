from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from caseflow.core.config import get_settings
from caseflow.core.logging import configure_logging
from caseflow.persistence.db import dispose_engine
from caseflow.services.container import build_engine
from caseflow.services.queue import MessageJobPayload, process_message_job


logger = logging.getLogger(__name__)


async def process_message(ctx, payload: dict) -> str:
    # Validate in the worker so malformed jobs fail loudly instead of half-applying.
    job_payload = MessageJobPayload.model_validate(payload)
    settings = get_settings()
    result = await process_message_job(
        ctx["engine"].manager,
        job_payload,
        attempt=ctx.get("job_try", 1),
        max_tries=settings.automation_max_tries,
    )
    return result.outcome.value if result is not None else "abandoned"


async def sweep_stale_conversations(ctx) -> int:
    return await ctx["engine"].manager.sweep_stale(limit=get_settings().sweep_batch_size)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["engine"] = build_engine()
    logger.info("automation_worker_started queue=%s", get_settings().automation_queue_name)


async def _shutdown(ctx) -> None:
    await dispose_engine()
    logger.info("automation_worker_stopped")


def _sweep_minutes(interval: int) -> set[int]:
    interval = max(1, min(60, interval))
    return set(range(0, 60, interval))


class WorkerSettings:
    # Class attributes keep the settings usable from the arq CLI.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.automation_queue_name
    max_tries = max(1, int(settings.automation_max_tries))
    functions = [process_message]
    cron_jobs = [
        cron(
            sweep_stale_conversations,
            minute=_sweep_minutes(settings.sweep_interval_minutes),
            run_at_startup=False,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
