from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
import math
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseflow.core.config import Settings, get_settings
from caseflow.core.errors import NotificationDeliveryError, QuotaExhaustedError
from caseflow.domain.models import Tenant, UsageRecord
from caseflow.persistence.repos import tenants as tenants_repo
from caseflow.persistence.repos import usage as usage_repo
from caseflow.services.audit import ACTOR_HUMAN, ACTOR_SYSTEM, record_event
from caseflow.services.locks import KeyedLocks
from caseflow.services.notifications import templates
from caseflow.services.notifications.dispatcher import NotificationDispatcher, NotificationPayload, usage_key
from caseflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

PERIOD_DAY = "day"
PERIOD_MONTH = "month"

REASON_EXHAUSTED = "exhausted"
REASON_APPROACHING = "approaching"

NOTICE_WARNING = "warning"
NOTICE_CUTOFF = "cutoff"

# Automated resolutions are the bounded resource; classifier calls are recorded only.
SERVICE_AUTOMATION = "automation"
SERVICE_LLM = "llm"


@dataclass(frozen=True)
class PlanPricing:
    name: str
    monthly_price: Decimal
    cost_per_resolution: Decimal

    @property
    def included_resolutions(self) -> int:
        return int(self.monthly_price // self.cost_per_resolution)


PLAN_PRICING: dict[str, PlanPricing] = {
    "solopreneur": PlanPricing("solopreneur", Decimal("9"), Decimal("0.80")),
    "growth": PlanPricing("growth", Decimal("45"), Decimal("0.75")),
    "scale": PlanPricing("scale", Decimal("80"), Decimal("0.70")),
}


def plan_allotment(plan_name: str | None) -> int:
    # Unknown plans fall back to the entry tier.
    plan = PLAN_PRICING.get((plan_name or "").lower(), PLAN_PRICING["solopreneur"])
    return plan.included_resolutions


def resolve_monthly_limit(tenant: Tenant | None, settings: Settings) -> int:
    if settings.quota_testing_limits:
        return settings.quota_testing_monthly_limit
    if tenant is not None and tenant.monthly_allotment is not None:
        return tenant.monthly_allotment
    if tenant is None or (tenant.billing_status == "trial" and not tenant.payment_secured):
        return plan_allotment(settings.quota_trial_plan)
    return plan_allotment(tenant.plan_name)


@dataclass(frozen=True)
class QuotaSnapshot:
    limit: int | None
    used: int
    remaining: int | None


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    day: QuotaSnapshot
    month: QuotaSnapshot
    reason: str | None = None
    blocked_period: str | None = None
    limit_exceeded: bool = False
    unlimited: bool = False
    # True when the store was unreachable and the call was let through untracked.
    degraded: bool = False
    notification_sent: bool = False


@dataclass(frozen=True)
class UsageView:
    tenant_id: str
    service: str
    day: QuotaSnapshot
    month: QuotaSnapshot
    daily_window_start: datetime
    monthly_window_start: datetime
    limit_exceeded: bool
    warning_sent: bool
    cutoff_sent: bool
    unlimited: bool
    last_event_at: datetime | None = None


@dataclass(frozen=True)
class _PendingNotice:
    notice: str
    period: str
    window_start: datetime
    used: int
    limit: int
    recipient: str | None
    contact_name: str | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _day_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)


def _month_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def _period_token(period: str, window_start: datetime) -> str:
    if period == PERIOD_MONTH:
        return f"{PERIOD_MONTH}-{window_start.strftime('%Y-%m')}"
    return f"{PERIOD_DAY}-{window_start.strftime('%Y-%m-%d')}"


def _snapshot(limit: int | None, used: int) -> QuotaSnapshot:
    if limit is None:
        return QuotaSnapshot(limit=None, used=used, remaining=None)
    return QuotaSnapshot(limit=limit, used=used, remaining=max(limit - used, 0))


def _warning_threshold(limit: int, ratio: float) -> int:
    return int(math.floor(limit * ratio))


def _blocked_period(daily_used: int, monthly_used: int, daily_limit: int | None, monthly_limit: int | None) -> str | None:
    # Daily is reported first when both are spent.
    if daily_limit is not None and daily_used >= daily_limit:
        return PERIOD_DAY
    if monthly_limit is not None and monthly_used >= monthly_limit:
        return PERIOD_MONTH
    return None


def _approaching_period(
    daily_used: int,
    monthly_used: int,
    daily_limit: int | None,
    monthly_limit: int | None,
    ratio: float,
) -> str | None:
    if daily_limit is not None and _warning_threshold(daily_limit, ratio) <= daily_used < daily_limit:
        return PERIOD_DAY
    if monthly_limit is not None and _warning_threshold(monthly_limit, ratio) <= monthly_used < monthly_limit:
        return PERIOD_MONTH
    return None


class QuotaService:
    """Per-tenant, per-service usage gate with daily and monthly windows.

    Check-and-increment is serialized per (tenant, service) in process, holds a
    row lock where the backend supports one, and the increment itself is a
    guarded UPDATE, so concurrent callers can never push a counter past its limit.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: NotificationDispatcher | None = None,
        time_provider: Callable[[], datetime] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._time_provider = time_provider or _utc_now
        self._settings = settings or get_settings()
        self._locks = KeyedLocks()

    def is_unlimited(self, service: str) -> bool:
        return service.lower() in self._settings.unlimited_services()

    async def check_and_consume(self, tenant_id: str, service: str) -> QuotaDecision:
        service = service.lower()
        try:
            async with self._locks.hold(f"{tenant_id}:{service}"):
                return await self._check_and_consume(tenant_id, service)
        except (SQLAlchemyError, OSError) as exc:
            # A tracking outage must not block customer-facing automation.
            increment_counter("quota_fail_open_total")
            logger.warning("quota_store_unavailable tenant_id=%s service=%s", tenant_id, service, exc_info=exc)
            unknown = QuotaSnapshot(limit=None, used=0, remaining=None)
            return QuotaDecision(allowed=True, day=unknown, month=unknown, degraded=True)

    async def require(self, tenant_id: str, service: str) -> QuotaDecision:
        decision = await self.check_and_consume(tenant_id, service)
        if not decision.allowed:
            raise QuotaExhaustedError(tenant_id, service, decision.blocked_period)
        return decision

    async def _check_and_consume(self, tenant_id: str, service: str) -> QuotaDecision:
        now = self._time_provider()
        day_start = _day_start(now)
        month_start = _month_start(now)
        unlimited = self.is_unlimited(service)
        pending: _PendingNotice | None = None

        async with self._session_factory() as session:
            async with session.begin():
                tenant = await tenants_repo.get_tenant(session, tenant_id)
                record = await usage_repo.get_or_create_record(
                    session, tenant_id, service, day_start=day_start, month_start=month_start
                )
                self._roll_windows(record, day_start=day_start, month_start=month_start)
                await session.flush()

                if unlimited:
                    await usage_repo.compare_and_increment(
                        session, record, daily_limit=None, monthly_limit=None, now=now
                    )
                    return QuotaDecision(
                        allowed=True,
                        day=_snapshot(None, record.daily_count),
                        month=_snapshot(None, record.monthly_count),
                        unlimited=True,
                    )

                daily_limit = self._settings.quota_daily_limit
                monthly_limit = resolve_monthly_limit(tenant, self._settings)
                blocked = _blocked_period(record.daily_count, record.monthly_count, daily_limit, monthly_limit)
                approaching: str | None = None
                if blocked is None:
                    approaching = _approaching_period(
                        record.daily_count,
                        record.monthly_count,
                        daily_limit,
                        monthly_limit,
                        self._settings.quota_warning_ratio,
                    )
                    consumed = await usage_repo.compare_and_increment(
                        session, record, daily_limit=daily_limit, monthly_limit=monthly_limit, now=now
                    )
                    if not consumed:
                        blocked = (
                            _blocked_period(record.daily_count, record.monthly_count, daily_limit, monthly_limit)
                            or PERIOD_DAY
                        )

                if blocked is not None:
                    if not record.limit_exceeded:
                        record.limit_exceeded = True
                        record.limit_exceeded_at = now
                    if not record.cutoff_sent:
                        pending = self._pending_notice(
                            NOTICE_CUTOFF,
                            blocked,
                            record,
                            tenant,
                            daily_limit=daily_limit,
                            monthly_limit=monthly_limit,
                            day_start=day_start,
                            month_start=month_start,
                        )
                elif approaching is not None and not record.warning_sent:
                    pending = self._pending_notice(
                        NOTICE_WARNING,
                        approaching,
                        record,
                        tenant,
                        daily_limit=daily_limit,
                        monthly_limit=monthly_limit,
                        day_start=day_start,
                        month_start=month_start,
                    )
                day = _snapshot(daily_limit, record.daily_count)
                month = _snapshot(monthly_limit, record.monthly_count)
                limit_exceeded = record.limit_exceeded

        notification_sent = False
        if pending is not None:
            notification_sent = await self._deliver_notice(tenant_id, service, pending)

        if blocked is not None:
            increment_counter("quota_blocked_total")
            logger.info(
                "quota_blocked tenant_id=%s service=%s period=%s day_used=%s month_used=%s",
                tenant_id,
                service,
                blocked,
                day.used,
                month.used,
            )
            return QuotaDecision(
                allowed=False,
                day=day,
                month=month,
                reason=REASON_EXHAUSTED,
                blocked_period=blocked,
                limit_exceeded=limit_exceeded,
                notification_sent=notification_sent,
            )
        return QuotaDecision(
            allowed=True,
            day=day,
            month=month,
            reason=REASON_APPROACHING if approaching is not None else None,
            limit_exceeded=limit_exceeded,
            notification_sent=notification_sent,
        )

    def _roll_windows(self, record: UsageRecord, *, day_start: datetime, month_start: datetime) -> None:
        # Zero counters whose window has passed before any limit is consulted.
        if record.daily_window_start < day_start:
            record.daily_count = 0
            record.daily_window_start = day_start
        if record.monthly_window_start < month_start:
            record.monthly_count = 0
            record.monthly_window_start = month_start
        current = {
            PERIOD_DAY: _period_token(PERIOD_DAY, day_start),
            PERIOD_MONTH: _period_token(PERIOD_MONTH, month_start),
        }
        # Notice flags are sticky only for the window that raised them.
        if record.warning_sent and not _is_current(record.warning_period, current):
            record.warning_sent = False
            record.warning_sent_at = None
            record.warning_period = None
        if record.cutoff_sent and not _is_current(record.cutoff_period, current):
            record.cutoff_sent = False
            record.cutoff_sent_at = None
            record.cutoff_period = None

    def _pending_notice(
        self,
        notice: str,
        period: str,
        record: UsageRecord,
        tenant: Tenant | None,
        *,
        daily_limit: int,
        monthly_limit: int,
        day_start: datetime,
        month_start: datetime,
    ) -> _PendingNotice:
        if period == PERIOD_MONTH:
            used, limit, window_start = record.monthly_count, monthly_limit, month_start
        else:
            used, limit, window_start = record.daily_count, daily_limit, day_start
        return _PendingNotice(
            notice=notice,
            period=period,
            window_start=window_start,
            used=used,
            limit=limit,
            recipient=tenant.contact_email if tenant is not None else None,
            contact_name=tenant.contact_name if tenant is not None else None,
        )

    async def _deliver_notice(self, tenant_id: str, service: str, pending: _PendingNotice) -> bool:
        # The sticky flag is set only after the dispatcher confirms the key as sent.
        if self._dispatcher is None or not pending.recipient:
            logger.warning(
                "quota_notice_undeliverable tenant_id=%s service=%s notice=%s",
                tenant_id,
                service,
                pending.notice,
            )
            return False
        render = templates.usage_cutoff if pending.notice == NOTICE_CUTOFF else templates.usage_warning
        message = render(
            contact_name=pending.contact_name,
            service=service,
            period=pending.period,
            used=pending.used,
            limit=pending.limit,
        )
        key = usage_key(tenant_id, service, pending.notice, pending.period, pending.window_start)
        try:
            sent = await self._dispatcher.send_once(
                key,
                NotificationPayload(
                    tenant_id=tenant_id,
                    recipient=pending.recipient,
                    subject=message.subject,
                    body=message.body,
                    template_tag=message.template_tag,
                ),
            )
        except NotificationDeliveryError as exc:
            logger.warning(
                "quota_notice_delivery_failed tenant_id=%s service=%s notice=%s",
                tenant_id,
                service,
                pending.notice,
                exc_info=exc,
            )
            return False

        # A duplicate key means an earlier attempt delivered but did not record the flag.
        await self._mark_notice_sent(tenant_id, service, pending)
        return sent

    async def _mark_notice_sent(self, tenant_id: str, service: str, pending: _PendingNotice) -> None:
        now = self._time_provider()
        token = _period_token(pending.period, pending.window_start)
        async with self._session_factory() as session:
            async with session.begin():
                record = await usage_repo.get_record(session, tenant_id, service, for_update=True)
                if record is None:
                    return
                if pending.notice == NOTICE_CUTOFF:
                    record.cutoff_sent = True
                    record.cutoff_sent_at = now
                    record.cutoff_period = token
                else:
                    record.warning_sent = True
                    record.warning_sent_at = now
                    record.warning_period = token
                await record_event(
                    session=session,
                    occurred_at=now,
                    tenant_id=tenant_id,
                    actor_type=ACTOR_SYSTEM,
                    actor_id="quota",
                    event_type=f"usage.{pending.notice}_sent",
                    outcome="success",
                    resource_type="usage",
                    resource_id=f"{tenant_id}:{service}",
                    customer_email=pending.recipient,
                    metadata={
                        "service": service,
                        "period": pending.period,
                        "window": token,
                        "used": pending.used,
                        "limit": pending.limit,
                    },
                )

    async def get_usage(self, tenant_id: str, service: str) -> UsageView:
        """Read-only view with rollover applied in memory; never consumes or persists."""
        service = service.lower()
        now = self._time_provider()
        day_start = _day_start(now)
        month_start = _month_start(now)
        unlimited = self.is_unlimited(service)
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id)
            record = await usage_repo.get_record(session, tenant_id, service)

        daily_limit = None if unlimited else self._settings.quota_daily_limit
        monthly_limit = None if unlimited else resolve_monthly_limit(tenant, self._settings)
        if record is None:
            return UsageView(
                tenant_id=tenant_id,
                service=service,
                day=_snapshot(daily_limit, 0),
                month=_snapshot(monthly_limit, 0),
                daily_window_start=day_start,
                monthly_window_start=month_start,
                limit_exceeded=False,
                warning_sent=False,
                cutoff_sent=False,
                unlimited=unlimited,
            )
        current = {
            PERIOD_DAY: _period_token(PERIOD_DAY, day_start),
            PERIOD_MONTH: _period_token(PERIOD_MONTH, month_start),
        }
        daily_used = record.daily_count if record.daily_window_start >= day_start else 0
        monthly_used = record.monthly_count if record.monthly_window_start >= month_start else 0
        return UsageView(
            tenant_id=tenant_id,
            service=service,
            day=_snapshot(daily_limit, daily_used),
            month=_snapshot(monthly_limit, monthly_used),
            daily_window_start=max(record.daily_window_start, day_start),
            monthly_window_start=max(record.monthly_window_start, month_start),
            limit_exceeded=record.limit_exceeded,
            warning_sent=record.warning_sent and _is_current(record.warning_period, current),
            cutoff_sent=record.cutoff_sent and _is_current(record.cutoff_period, current),
            unlimited=unlimited,
            last_event_at=record.last_event_at,
        )

    async def reset_usage(self, tenant_id: str, service: str, *, actor_id: str | None = None) -> bool:
        """Zero counters and clear sticky flags; False when the pair has no record."""
        service = service.lower()
        now = self._time_provider()
        async with self._locks.hold(f"{tenant_id}:{service}"):
            async with self._session_factory() as session:
                async with session.begin():
                    record = await usage_repo.get_record(session, tenant_id, service, for_update=True)
                    if record is None:
                        return False
                    previous = {"daily_count": record.daily_count, "monthly_count": record.monthly_count}
                    record.daily_count = 0
                    record.monthly_count = 0
                    record.daily_window_start = _day_start(now)
                    record.monthly_window_start = _month_start(now)
                    record.limit_exceeded = False
                    record.limit_exceeded_at = None
                    record.warning_sent = False
                    record.warning_sent_at = None
                    record.warning_period = None
                    record.cutoff_sent = False
                    record.cutoff_sent_at = None
                    record.cutoff_period = None
                    await record_event(
                        session=session,
                        occurred_at=now,
                        tenant_id=tenant_id,
                        actor_type=ACTOR_HUMAN,
                        actor_id=actor_id,
                        event_type="usage.reset",
                        outcome="success",
                        resource_type="usage",
                        resource_id=f"{tenant_id}:{service}",
                        metadata={"service": service, "previous": previous},
                    )
        logger.info("quota_reset tenant_id=%s service=%s", tenant_id, service)
        return True


def _is_current(period_token: str | None, current: dict[str, str]) -> bool:
    if not period_token:
        return False
    kind = period_token.split("-", 1)[0]
    return current.get(kind) == period_token
