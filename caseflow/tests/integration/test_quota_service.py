from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import SQLAlchemyError

from caseflow.core.config import Settings
from caseflow.core.errors import QuotaExhaustedError
from caseflow.persistence.repos import activity as activity_repo
from caseflow.services.notifications import NotificationDispatcher
from caseflow.services.notifications.templates import TAG_USAGE_CUTOFF, TAG_USAGE_WARNING
from caseflow.services.quota import PERIOD_DAY, PERIOD_MONTH, REASON_EXHAUSTED, SERVICE_AUTOMATION, SERVICE_LLM, QuotaService
from caseflow.services.telemetry import counters_snapshot
from caseflow.tests.utils.factories import seed_tenant


def _quota(session_factory, email, clock, **overrides) -> QuotaService:
    dispatcher = NotificationDispatcher(session_factory=session_factory, sender=email, time_provider=clock)
    return QuotaService(
        session_factory=session_factory,
        dispatcher=dispatcher,
        time_provider=clock,
        settings=Settings(**overrides),
    )


@pytest.mark.asyncio
async def test_concurrent_consumers_never_exceed_limit(session_factory, email, clock) -> None:
    await seed_tenant(session_factory, "t1")
    quota = _quota(session_factory, email, clock, quota_daily_limit=5)

    decisions = await asyncio.gather(*[quota.check_and_consume("t1", SERVICE_AUTOMATION) for _ in range(8)])

    assert sum(1 for decision in decisions if decision.allowed) == 5
    usage = await quota.get_usage("t1", SERVICE_AUTOMATION)
    assert usage.day.used == 5
    assert usage.month.used == 5
    assert usage.limit_exceeded


@pytest.mark.asyncio
async def test_daily_window_rolls_over_but_month_keeps_counting(session_factory, email, clock) -> None:
    await seed_tenant(session_factory, "t1")
    quota = _quota(session_factory, email, clock, quota_daily_limit=3)
    for _ in range(2):
        assert (await quota.check_and_consume("t1", SERVICE_AUTOMATION)).allowed

    clock.advance(days=1)
    usage = await quota.get_usage("t1", SERVICE_AUTOMATION)
    assert usage.day.used == 0
    assert usage.month.used == 2

    decision = await quota.check_and_consume("t1", SERVICE_AUTOMATION)
    assert decision.allowed
    assert decision.day.used == 1
    assert decision.month.used == 3


@pytest.mark.asyncio
async def test_warning_and_cutoff_are_sent_once(session_factory, email, clock) -> None:
    await seed_tenant(session_factory, "t1")
    quota = _quota(session_factory, email, clock, quota_daily_limit=2)

    first = await quota.check_and_consume("t1", SERVICE_AUTOMATION)
    second = await quota.check_and_consume("t1", SERVICE_AUTOMATION)
    blocked = await quota.check_and_consume("t1", SERVICE_AUTOMATION)
    blocked_again = await quota.check_and_consume("t1", SERVICE_AUTOMATION)

    assert first.allowed and second.allowed
    assert second.notification_sent
    assert not blocked.allowed
    assert blocked.reason == REASON_EXHAUSTED
    assert blocked.blocked_period == PERIOD_DAY
    assert blocked.notification_sent
    assert not blocked_again.notification_sent
    assert len(email.sent_with_tag(TAG_USAGE_WARNING)) == 1
    assert len(email.sent_with_tag(TAG_USAGE_CUTOFF)) == 1
    assert email.outbox[0].to == "owner@example.com"

    usage = await quota.get_usage("t1", SERVICE_AUTOMATION)
    assert usage.warning_sent and usage.cutoff_sent

    async with session_factory() as session:
        entries = await activity_repo.list_entries(session, tenant_id="t1", event_type="usage.cutoff_sent")
    assert len(entries) == 1


@pytest.mark.asyncio
async def test_cutoff_flag_resets_with_the_next_window(session_factory, email, clock) -> None:
    await seed_tenant(session_factory, "t1")
    quota = _quota(session_factory, email, clock, quota_daily_limit=1)
    await quota.check_and_consume("t1", SERVICE_AUTOMATION)
    assert not (await quota.check_and_consume("t1", SERVICE_AUTOMATION)).allowed

    clock.advance(days=1)
    assert (await quota.check_and_consume("t1", SERVICE_AUTOMATION)).allowed
    assert not (await quota.check_and_consume("t1", SERVICE_AUTOMATION)).allowed
    assert len(email.sent_with_tag(TAG_USAGE_CUTOFF)) == 2


@pytest.mark.asyncio
async def test_require_raises_when_exhausted(session_factory, email, clock) -> None:
    await seed_tenant(session_factory, "t1", monthly_allotment=1)
    quota = _quota(session_factory, email, clock)
    await quota.require("t1", SERVICE_AUTOMATION)
    with pytest.raises(QuotaExhaustedError) as excinfo:
        await quota.require("t1", SERVICE_AUTOMATION)
    assert excinfo.value.period == "month"


@pytest.mark.asyncio
async def test_unlimited_service_is_recorded_not_blocked(session_factory, email, clock) -> None:
    await seed_tenant(session_factory, "t1")
    quota = _quota(session_factory, email, clock, quota_daily_limit=1)
    for _ in range(4):
        decision = await quota.check_and_consume("t1", SERVICE_LLM)
        assert decision.allowed
        assert decision.unlimited
    usage = await quota.get_usage("t1", SERVICE_LLM)
    assert usage.unlimited
    assert usage.day.used == 4
    assert usage.day.limit is None
    assert email.outbox == []


@pytest.mark.asyncio
async def test_store_outage_fails_open(email, clock) -> None:
    def broken_factory():
        raise SQLAlchemyError("database unreachable")

    quota = QuotaService(session_factory=broken_factory, time_provider=clock, settings=Settings())
    decision = await quota.check_and_consume("t1", SERVICE_AUTOMATION)
    assert decision.allowed
    assert decision.degraded
    assert counters_snapshot()["quota_fail_open_total"] == 1


@pytest.mark.asyncio
async def test_reset_clears_counters_and_flags(session_factory, email, clock) -> None:
    await seed_tenant(session_factory, "t1")
    quota = _quota(session_factory, email, clock, quota_daily_limit=1)
    await quota.check_and_consume("t1", SERVICE_AUTOMATION)
    assert not (await quota.check_and_consume("t1", SERVICE_AUTOMATION)).allowed

    assert await quota.reset_usage("t1", SERVICE_AUTOMATION, actor_id="ops@example.com")
    usage = await quota.get_usage("t1", SERVICE_AUTOMATION)
    assert usage.day.used == 0
    assert not usage.limit_exceeded
    assert not usage.cutoff_sent
    assert (await quota.check_and_consume("t1", SERVICE_AUTOMATION)).allowed

    assert not await quota.reset_usage("t1", "nothing-here")
    async with session_factory() as session:
        entries = await activity_repo.list_entries(session, tenant_id="t1", event_type="usage.reset")
    assert entries[0].actor_id == "ops@example.com"


@pytest.mark.asyncio
async def test_trial_without_payment_gets_trial_allotment(session_factory, email, clock) -> None:
    await seed_tenant(session_factory, "t2", billing_status="trial", payment_secured=False, plan_name="scale")
    quota = _quota(session_factory, email, clock)
    usage = await quota.get_usage("t2", SERVICE_AUTOMATION)
    assert usage.month.limit == 11


@pytest.mark.asyncio
async def test_monthly_window_rolls_over_on_the_first(session_factory, email, clock) -> None:
    await seed_tenant(session_factory, "t1", monthly_allotment=3)
    quota = _quota(session_factory, email, clock)
    for _ in range(2):
        assert (await quota.check_and_consume("t1", SERVICE_AUTOMATION)).allowed

    last = await quota.check_and_consume("t1", SERVICE_AUTOMATION)
    assert last.allowed
    assert last.month.used == 3
    assert last.month.remaining == 0

    clock.now = datetime(2026, 3, 31, 23, 59, tzinfo=timezone.utc)
    blocked = await quota.check_and_consume("t1", SERVICE_AUTOMATION)
    assert not blocked.allowed
    assert blocked.blocked_period == PERIOD_MONTH

    clock.now = datetime(2026, 4, 1, 0, 0, tzinfo=timezone.utc)
    usage = await quota.get_usage("t1", SERVICE_AUTOMATION)
    assert usage.month.used == 0
    assert usage.monthly_window_start == datetime(2026, 4, 1, tzinfo=timezone.utc)

    renewed = await quota.check_and_consume("t1", SERVICE_AUTOMATION)
    assert renewed.allowed
    assert renewed.month.used == 1
    assert renewed.day.used == 1


@pytest.mark.asyncio
async def test_daily_cutoff_is_reported_when_both_windows_are_spent(session_factory, email, clock) -> None:
    await seed_tenant(session_factory, "t1", monthly_allotment=1)
    quota = _quota(session_factory, email, clock, quota_daily_limit=1)
    assert (await quota.check_and_consume("t1", SERVICE_AUTOMATION)).allowed

    blocked = await quota.check_and_consume("t1", SERVICE_AUTOMATION)

    assert not blocked.allowed
    assert blocked.blocked_period == PERIOD_DAY
