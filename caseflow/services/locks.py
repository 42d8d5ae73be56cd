from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator
from uuid import uuid4

from caseflow.core.config import get_settings
from caseflow.core.errors import ThreadBusyError
from caseflow.services.resilience import get_coordination_redis


logger = logging.getLogger(__name__)


class KeyedLocks:
    """In-process asyncio locks keyed by string; entries are dropped once nobody waits on them."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] <= 0:
                self._holders.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(slots=True)
class ThreadLease:
    key: str
    token: str
    redis: Any | None


async def acquire_thread_lease(
    key: str,
    *,
    redis: Any | None,
    ttl_s: int,
    wait_s: float,
    poll_s: float = 0.05,
) -> ThreadLease:
    # Poll SET NX EX until the lease is ours or the wait budget is spent.
    token = uuid4().hex
    if redis is None:
        return ThreadLease(key=key, token=token, redis=None)
    deadline = time.monotonic() + max(0.0, wait_s)
    while True:
        acquired = await redis.set(key, token, nx=True, ex=max(1, ttl_s))
        if acquired:
            return ThreadLease(key=key, token=token, redis=redis)
        if time.monotonic() >= deadline:
            logger.warning("thread_lease_busy key=%s", key)
            raise ThreadBusyError(f"thread lease {key} is held by another worker")
        await asyncio.sleep(poll_s)


async def release_thread_lease(lease: ThreadLease) -> None:
    # Release only if we still own the token so an expired lease never clobbers a newer holder.
    if lease.redis is None:
        return
    current = await lease.redis.get(lease.key)
    value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
    if value == lease.token:
        await lease.redis.delete(lease.key)


_thread_locks = KeyedLocks()


@asynccontextmanager
async def serialize_thread(tenant_id: str, thread_id: str) -> AsyncIterator[None]:
    """Apply messages of one thread one at a time, across tasks and, with Redis, across processes."""
    settings = get_settings()
    key = f"{settings.thread_lock_prefix}:{tenant_id}:{thread_id}"
    async with _thread_locks.hold(key):
        redis = await get_coordination_redis()
        lease = await acquire_thread_lease(
            key,
            redis=redis,
            ttl_s=settings.thread_lease_ttl_s,
            wait_s=settings.thread_lease_wait_s,
        )
        try:
            yield
        finally:
            await release_thread_lease(lease)
