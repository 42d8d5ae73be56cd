from __future__ import annotations

import asyncio
from datetime import datetime
import logging

from arq import Retry, create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, Field

from caseflow.core.config import get_settings
from caseflow.core.errors import CollaboratorUnavailableError
from caseflow.domain.types import InboundMessage
from caseflow.services.conversations import ConversationManager, MessageResult


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


class MessageJobPayload(BaseModel):
    # Published job schema for API-to-worker handoff.
    tenant_id: str
    thread_id: str
    message_id: str
    customer_email: str
    subject: str = ""
    body: str = ""
    attachments: list[str] = Field(default_factory=list)
    received_at: datetime | None = None

    def to_message(self) -> InboundMessage:
        return InboundMessage(
            tenant_id=self.tenant_id,
            thread_id=self.thread_id,
            message_id=self.message_id,
            customer_email=self.customer_email,
            subject=self.subject,
            body=self.body,
            attachments=tuple(self.attachments),
            received_at=self.received_at,
        )


def job_id_for(payload: MessageJobPayload) -> str:
    # One job per inbound message; arq drops duplicates with the same id.
    return f"message:{payload.tenant_id}:{payload.message_id}"


async def get_redis_pool():
    # Cache the pool per event loop so tests never reuse a pool bound to a closed loop.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.automation_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def enqueue_message(payload: MessageJobPayload) -> str:
    job_id = job_id_for(payload)
    settings = get_settings()
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        "process_message",
        payload.model_dump(mode="json"),
        _job_id=job_id,
        _queue_name=settings.automation_queue_name,
    )
    # arq returns None when the job id is already queued; callers still trace by id.
    return job.job_id if job else job_id


async def process_message_job(
    manager: ConversationManager,
    payload: MessageJobPayload,
    *,
    attempt: int,
    max_tries: int,
) -> MessageResult | None:
    """Run one queued message; collaborator outages are retried with backoff until tries run out."""
    try:
        return await manager.handle_message(payload.to_message())
    except CollaboratorUnavailableError as exc:
        if attempt < max_tries:
            logger.warning(
                "message_job_retry tenant_id=%s message_id=%s attempt=%s",
                payload.tenant_id,
                payload.message_id,
                attempt,
                exc_info=exc,
            )
            raise Retry(defer=attempt * 5) from exc
        logger.error(
            "message_job_abandoned tenant_id=%s message_id=%s attempts=%s",
            payload.tenant_id,
            payload.message_id,
            attempt,
            exc_info=exc,
        )
        return None
