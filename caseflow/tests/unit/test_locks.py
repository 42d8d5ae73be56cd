from __future__ import annotations

import asyncio

import pytest

from caseflow.core.errors import ThreadBusyError
from caseflow.services.locks import KeyedLocks, acquire_thread_lease, release_thread_lease


class _MemoryRedis:
    """Just enough of SET NX / GET / DELETE for lease tests."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    async def set(self, key: str, value: str, *, nx: bool = False, ex: int | None = None) -> bool:
        if nx and key in self.values:
            return False
        self.values[key] = value
        return True

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def delete(self, key: str) -> int:
        return 1 if self.values.pop(key, None) is not None else 0


@pytest.mark.asyncio
async def test_keyed_locks_serialize_same_key() -> None:
    locks = KeyedLocks()
    order: list[str] = []

    async def worker(name: str) -> None:
        async with locks.hold("thread-1"):
            order.append(f"{name}:start")
            await asyncio.sleep(0.01)
            order.append(f"{name}:end")

    await asyncio.gather(worker("a"), worker("b"))
    assert order in (
        ["a:start", "a:end", "b:start", "b:end"],
        ["b:start", "b:end", "a:start", "a:end"],
    )
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_keyed_locks_do_not_block_other_keys() -> None:
    locks = KeyedLocks()
    async with locks.hold("one"):
        await asyncio.wait_for(_enter(locks, "two"), timeout=0.5)


async def _enter(locks: KeyedLocks, key: str) -> None:
    async with locks.hold(key):
        return None


@pytest.mark.asyncio
async def test_thread_lease_is_exclusive_until_released() -> None:
    redis = _MemoryRedis()
    lease = await acquire_thread_lease("lease:t1:x", redis=redis, ttl_s=30, wait_s=0)
    with pytest.raises(ThreadBusyError):
        await acquire_thread_lease("lease:t1:x", redis=redis, ttl_s=30, wait_s=0.05, poll_s=0.01)
    await release_thread_lease(lease)
    second = await acquire_thread_lease("lease:t1:x", redis=redis, ttl_s=30, wait_s=0)
    assert second.token != lease.token


@pytest.mark.asyncio
async def test_release_leaves_a_newer_holder_alone() -> None:
    redis = _MemoryRedis()
    stale = await acquire_thread_lease("lease:t1:y", redis=redis, ttl_s=30, wait_s=0)
    # Simulate expiry followed by another worker taking the lease.
    redis.values["lease:t1:y"] = "someone-else"
    await release_thread_lease(stale)
    assert redis.values["lease:t1:y"] == "someone-else"


@pytest.mark.asyncio
async def test_lease_without_redis_is_local_only() -> None:
    lease = await acquire_thread_lease("lease:t1:z", redis=None, ttl_s=30, wait_s=0)
    assert lease.redis is None
    await release_thread_lease(lease)
