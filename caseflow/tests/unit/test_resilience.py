from __future__ import annotations

import httpx
import pytest

from caseflow.core.errors import ClassifierUnavailableError, IntegrationUnavailableError
from caseflow.services.resilience import (
    BreakerConfig,
    BreakerState,
    CallPolicy,
    CircuitBreaker,
    CollaboratorGuard,
    call_with_retries,
    is_transient,
)
from caseflow.services.telemetry import counters_snapshot


FAST = CallPolicy(attempts=3, timeout_s=0.1, backoff_s=0.001)


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _StringStore:
    """Just enough of redis.asyncio for breaker snapshots."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.values[key] = value
        return True


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://shop.example.com/orders/1")
    return httpx.HTTPStatusError("upstream", request=request, response=httpx.Response(code, request=request))


def test_transient_classification() -> None:
    assert is_transient(TimeoutError())
    assert is_transient(httpx.ConnectError("refused"))
    assert is_transient(_status_error(503))
    assert is_transient(_status_error(429))
    assert not is_transient(_status_error(404))
    assert not is_transient(ValueError("bad payload"))


@pytest.mark.asyncio
async def test_transient_failure_is_retried() -> None:
    calls = []

    async def flaky() -> str:
        calls.append(1)
        if len(calls) < 2:
            raise TimeoutError("order platform slow")
        return "ok"

    assert await call_with_retries(flaky, FAST) == "ok"
    assert len(calls) == 2
    assert counters_snapshot()["external_retries_total"] == 1


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried() -> None:
    calls = []

    async def broken() -> None:
        calls.append(1)
        raise ValueError("bad request")

    with pytest.raises(ValueError):
        await call_with_retries(broken, FAST)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_breaker_opens_then_admits_one_trial() -> None:
    clock = _Clock()
    breaker = CircuitBreaker(
        "commerce.test",
        config=BreakerConfig(failure_threshold=2, open_seconds=10, half_open_trials=1),
        clock=clock,
    )
    await breaker.admit()
    await breaker.failed()
    await breaker.failed()
    assert await breaker.state() is BreakerState.OPEN
    with pytest.raises(IntegrationUnavailableError):
        await breaker.admit()

    clock.now = 11.0
    await breaker.admit()
    with pytest.raises(IntegrationUnavailableError):
        await breaker.admit()
    await breaker.succeeded()
    assert await breaker.state() is BreakerState.CLOSED
    await breaker.admit()


@pytest.mark.asyncio
async def test_failed_trial_reopens_breaker() -> None:
    clock = _Clock()
    breaker = CircuitBreaker(
        "email.test",
        config=BreakerConfig(failure_threshold=1, open_seconds=5, half_open_trials=1),
        clock=clock,
    )
    await breaker.failed()
    clock.now = 6.0
    await breaker.admit()
    await breaker.failed()
    with pytest.raises(IntegrationUnavailableError):
        await breaker.admit()


@pytest.mark.asyncio
async def test_breaker_state_is_shared_through_redis() -> None:
    store = _StringStore()
    config = BreakerConfig(failure_threshold=1, open_seconds=30, half_open_trials=1)
    first = CircuitBreaker("classifier.shared", redis=store, config=config)
    second = CircuitBreaker("classifier.shared", redis=store, config=config)

    await first.failed()

    assert await second.state() is BreakerState.OPEN
    with pytest.raises(IntegrationUnavailableError):
        await second.admit()


@pytest.mark.asyncio
async def test_guard_wraps_outage_and_counts_failure() -> None:
    breaker = CircuitBreaker(
        "classifier.guarded",
        config=BreakerConfig(failure_threshold=1, open_seconds=30, half_open_trials=1),
    )
    guard = CollaboratorGuard("classifier.guarded", breaker=breaker)

    async def down() -> None:
        raise httpx.ConnectError("refused")

    with pytest.raises(ClassifierUnavailableError):
        await guard.run(down, policy=CallPolicy(attempts=1, timeout_s=0.1, backoff_s=0), unavailable=ClassifierUnavailableError)
    assert await breaker.state() is BreakerState.OPEN


@pytest.mark.asyncio
async def test_guard_leaves_breaker_closed_on_client_errors() -> None:
    breaker = CircuitBreaker(
        "commerce.guarded",
        config=BreakerConfig(failure_threshold=1, open_seconds=30, half_open_trials=1),
    )
    guard = CollaboratorGuard("commerce.guarded", breaker=breaker)

    async def rejected() -> None:
        raise _status_error(401)

    with pytest.raises(httpx.HTTPStatusError):
        await guard.run(rejected, policy=FAST)
    assert await breaker.state() is BreakerState.CLOSED
