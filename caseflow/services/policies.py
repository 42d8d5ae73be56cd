from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.core.config import Settings, get_settings
from caseflow.domain.models import AutomationPolicy
from caseflow.domain.types import IntentType
from caseflow.persistence.repos import tenants as tenants_repo


MISSING_ORDER_DENY = "deny"
MISSING_ORDER_ESCALATE = "escalate"

REFUND_PERCENTAGE = "percentage"
REFUND_FIXED = "fixed_amount"


@dataclass(frozen=True)
class ResolvedPolicy:
    """Effective automation policy for one tenant and intent, with settings defaults filled in."""

    intent: IntentType
    enabled: bool
    enable_auto_approval: bool
    enable_auto_action: bool
    auto_approval_days: int
    max_follow_ups: int
    confidence_threshold: int
    require_reason: bool
    require_evidence_for_damaged: bool
    idle_timeout_minutes: int
    missing_order_decision: str = MISSING_ORDER_DENY
    refund_type: str | None = None
    refund_value: Decimal | None = None
    refund_cap: Decimal | None = None
    min_order_amount: Decimal | None = None
    max_order_amount: Decimal | None = None
    return_instructions: str | None = None


def default_policy(intent: IntentType, settings: Settings | None = None) -> ResolvedPolicy:
    settings = settings or get_settings()
    return ResolvedPolicy(
        intent=intent,
        enabled=intent is not IntentType.UNKNOWN,
        enable_auto_approval=True,
        enable_auto_action=True,
        auto_approval_days=settings.automation_auto_approval_days,
        max_follow_ups=settings.automation_max_follow_ups,
        confidence_threshold=settings.automation_confidence_threshold,
        require_reason=False,
        require_evidence_for_damaged=False,
        idle_timeout_minutes=settings.automation_idle_timeout_minutes,
    )


def merge_policy(row: AutomationPolicy | None, intent: IntentType, settings: Settings | None = None) -> ResolvedPolicy:
    base = default_policy(intent, settings)
    if row is None:
        return base
    return ResolvedPolicy(
        intent=intent,
        enabled=bool(row.enabled),
        enable_auto_approval=bool(row.enable_auto_approval),
        enable_auto_action=bool(row.enable_auto_action),
        auto_approval_days=row.auto_approval_days if row.auto_approval_days is not None else base.auto_approval_days,
        max_follow_ups=row.max_follow_ups if row.max_follow_ups is not None else base.max_follow_ups,
        confidence_threshold=(
            row.confidence_threshold if row.confidence_threshold is not None else base.confidence_threshold
        ),
        require_reason=bool(row.require_reason),
        require_evidence_for_damaged=bool(row.require_evidence_for_damaged),
        idle_timeout_minutes=(
            row.idle_timeout_minutes if row.idle_timeout_minutes is not None else base.idle_timeout_minutes
        ),
        missing_order_decision=row.missing_order_decision or MISSING_ORDER_DENY,
        refund_type=row.refund_type,
        refund_value=row.refund_value,
        refund_cap=row.refund_cap,
        min_order_amount=row.min_order_amount,
        max_order_amount=row.max_order_amount,
        return_instructions=row.return_instructions,
    )


async def resolve_policy(
    session: AsyncSession,
    tenant_id: str,
    intent: IntentType,
    settings: Settings | None = None,
) -> ResolvedPolicy:
    row = await tenants_repo.get_policy(session, tenant_id, intent.value)
    return merge_policy(row, intent, settings)
