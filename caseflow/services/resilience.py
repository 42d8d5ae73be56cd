from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

import httpx
from redis.asyncio import Redis

from caseflow.core.config import Settings, get_settings
from caseflow.core.errors import CollaboratorUnavailableError, IntegrationUnavailableError
from caseflow.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

T = TypeVar("T")


_coordination_redis: Redis | None = None
_coordination_loop: asyncio.AbstractEventLoop | None = None


async def get_coordination_redis() -> Redis | None:
    # One client per event loop; None when coordination is disabled or no loop is running.
    global _coordination_redis, _coordination_loop
    settings = get_settings()
    if not settings.redis_coordination_enabled:
        return None
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    if _coordination_redis is None or _coordination_loop is not loop:
        try:
            _coordination_redis = Redis.from_url(settings.redis_url, decode_responses=True)
        except (ValueError, OSError) as exc:
            logger.warning("coordination_redis_unavailable url=%s", settings.redis_url, exc_info=exc)
            return None
        _coordination_loop = loop
    return _coordination_redis


def is_transient(exc: BaseException) -> bool:
    """Timeouts, transport failures, throttling and upstream 5xx are worth another attempt."""
    if isinstance(exc, (TimeoutError, OSError, httpx.TransportError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return False


@dataclass(frozen=True)
class CallPolicy:
    attempts: int
    timeout_s: float
    backoff_s: float

    @classmethod
    def retrying(cls, settings: Settings | None = None) -> "CallPolicy":
        settings = settings or get_settings()
        return cls(
            attempts=max(1, settings.ext_retry_max_attempts),
            timeout_s=settings.ext_call_timeout_ms / 1000.0,
            backoff_s=settings.ext_retry_backoff_ms / 1000.0,
        )

    @classmethod
    def single_shot(cls, settings: Settings | None = None) -> "CallPolicy":
        # Mutations reach the collaborator at most once.
        settings = settings or get_settings()
        return cls(attempts=1, timeout_s=settings.action_timeout_ms / 1000.0, backoff_s=0.0)


async def call_with_retries(
    func: Callable[[], Awaitable[T]],
    policy: CallPolicy,
    *,
    should_retry: Callable[[BaseException], bool] = is_transient,
) -> T:
    attempt = 0
    while True:
        attempt += 1
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_s)
        except Exception as exc:
            if attempt >= policy.attempts or not should_retry(exc):
                raise
            increment_counter("external_retries_total")
            delay = policy.backoff_s * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)
            logger.info("external_call_retry attempt=%s delay_s=%.3f error=%s", attempt, delay, type(exc).__name__)
            await asyncio.sleep(delay)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class BreakerSnapshot:
    state: BreakerState = BreakerState.CLOSED
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0

    def dumps(self) -> str:
        data = asdict(self)
        data["state"] = self.state.value
        return json.dumps(data)

    @classmethod
    def loads(cls, raw: str) -> "BreakerSnapshot":
        data = json.loads(raw)
        return cls(
            state=BreakerState(data.get("state", "closed")),
            failures=int(data.get("failures", 0)),
            opened_at=data.get("opened_at"),
            trials=int(data.get("trials", 0)),
        )


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "BreakerConfig":
        settings = settings or get_settings()
        return cls(settings.cb_failure_threshold, settings.cb_open_seconds, settings.cb_half_open_trials)


class CircuitBreaker:
    """Stops calling a collaborator after repeated failures.

    With Redis the snapshot is shared by every process that talks to the same
    collaborator; otherwise it lives on the instance.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: BreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._redis = redis
        self._config = config or BreakerConfig.from_settings()
        self._clock = clock
        self._local = BreakerSnapshot()
        self._key = f"{get_settings().cb_redis_prefix}:{name}"

    async def _read(self) -> BreakerSnapshot:
        if self._redis is None:
            return self._local
        raw = await self._redis.get(self._key)
        return BreakerSnapshot.loads(raw) if raw else BreakerSnapshot()

    async def _write(self, snapshot: BreakerSnapshot) -> None:
        if self._redis is None:
            self._local = snapshot
            return
        await self._redis.set(self._key, snapshot.dumps(), ex=max(60, self._config.open_seconds * 4))

    def _moved(self, current: BreakerSnapshot, target: BreakerState) -> BreakerSnapshot:
        if current.state is not target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self.name, current.state.value, target.value)
            increment_counter(f"circuit_breaker_transition_total.{self.name}.{target.value}")
        return BreakerSnapshot(state=target, opened_at=self._clock() if target is BreakerState.OPEN else None)

    async def state(self) -> BreakerState:
        return (await self._read()).state

    async def admit(self) -> None:
        snapshot = await self._read()
        if snapshot.state is BreakerState.CLOSED:
            return
        if snapshot.state is BreakerState.OPEN:
            elapsed = self._clock() - (snapshot.opened_at or 0.0)
            if elapsed < self._config.open_seconds:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            snapshot = self._moved(snapshot, BreakerState.HALF_OPEN)
        if snapshot.state is BreakerState.HALF_OPEN:
            if snapshot.trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            snapshot.trials += 1
        await self._write(snapshot)

    async def succeeded(self) -> None:
        snapshot = await self._read()
        if snapshot.state is BreakerState.CLOSED and snapshot.failures == 0:
            return
        await self._write(self._moved(snapshot, BreakerState.CLOSED))

    async def failed(self) -> None:
        snapshot = await self._read()
        if snapshot.state is BreakerState.HALF_OPEN:
            await self._write(self._moved(snapshot, BreakerState.OPEN))
            return
        snapshot.failures += 1
        if snapshot.failures >= self._config.failure_threshold:
            snapshot = self._moved(snapshot, BreakerState.OPEN)
        await self._write(snapshot)


class CollaboratorGuard:
    """Breaker admission, bounded retries and call telemetry around one collaborator."""

    def __init__(self, name: str, *, breaker: CircuitBreaker | None = None) -> None:
        self.name = name
        self._breaker = breaker

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is None:
            self._breaker = CircuitBreaker(self.name, redis=await get_coordination_redis())
        return self._breaker

    async def run(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        policy: CallPolicy,
        should_retry: Callable[[BaseException], bool] = is_transient,
        counts_as_failure: Callable[[BaseException], bool] = is_transient,
        unavailable: type[CollaboratorUnavailableError] | None = None,
        message: str = "",
    ) -> T:
        # Errors the collaborator is not to blame for (4xx, validation) leave the breaker closed.
        breaker = await self._get_breaker()
        await breaker.admit()
        started = time.monotonic()
        try:
            result = await call_with_retries(func, policy, should_retry=should_retry)
        except Exception as exc:
            record_external_call(integration=self.name, latency_ms=(time.monotonic() - started) * 1000.0, success=False)
            if counts_as_failure(exc):
                await breaker.failed()
            if unavailable is not None and isinstance(exc, (httpx.HTTPError, TimeoutError, OSError)):
                raise unavailable(message or f"{self.name} call failed") from exc
            raise
        record_external_call(integration=self.name, latency_ms=(time.monotonic() - started) * 1000.0, success=True)
        await breaker.succeeded()
        return result

