from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

from caseflow.core.config import get_settings
from caseflow.domain.models import AutomationPolicy
from caseflow.domain.types import (
    FIELD_EVIDENCE,
    FIELD_ORDER_REFERENCE,
    FIELD_REASON,
    FIELD_SUBSCRIPTION_ACTION,
    FIELD_SUBSCRIPTION_REFERENCE,
    IntentType,
)
from caseflow.services.conversations import conversation_id_for, required_fields
from caseflow.services.policies import MISSING_ORDER_ESCALATE, default_policy, merge_policy
from caseflow.services.quota import plan_allotment


def test_defaults_come_from_settings() -> None:
    settings = get_settings()
    policy = default_policy(IntentType.RETURN_REQUEST)
    assert policy.enabled
    assert policy.confidence_threshold == settings.automation_confidence_threshold
    assert policy.max_follow_ups == settings.automation_max_follow_ups
    assert not default_policy(IntentType.UNKNOWN).enabled


def test_stored_policy_overrides_only_set_columns() -> None:
    row = AutomationPolicy(
        tenant_id="t1",
        intent_type="promo_code_issue",
        enabled=True,
        enable_auto_approval=True,
        enable_auto_action=False,
        max_follow_ups=4,
        require_reason=False,
        require_evidence_for_damaged=False,
        missing_order_decision=MISSING_ORDER_ESCALATE,
        refund_type="percentage",
        refund_value=Decimal("0.1"),
    )
    policy = merge_policy(row, IntentType.PROMO_CODE_ISSUE)
    assert policy.max_follow_ups == 4
    assert policy.auto_approval_days == get_settings().automation_auto_approval_days
    assert not policy.enable_auto_action
    assert policy.missing_order_decision == MISSING_ORDER_ESCALATE
    assert policy.refund_value == Decimal("0.1")


def test_required_fields_per_intent() -> None:
    returns = default_policy(IntentType.RETURN_REQUEST)
    assert required_fields(IntentType.RETURN_REQUEST, returns) == [FIELD_ORDER_REFERENCE]
    assert required_fields(IntentType.PROMO_CODE_ISSUE, default_policy(IntentType.PROMO_CODE_ISSUE)) == [
        FIELD_ORDER_REFERENCE
    ]
    assert required_fields(IntentType.SUBSCRIPTION_CHANGE, default_policy(IntentType.SUBSCRIPTION_CHANGE)) == [
        FIELD_SUBSCRIPTION_ACTION,
        FIELD_SUBSCRIPTION_REFERENCE,
    ]
    assert required_fields(IntentType.RETURN_REQUEST, replace(returns, enabled=False)) == []


def test_evidence_required_only_for_damage_claims() -> None:
    strict = replace(
        default_policy(IntentType.RETURN_REQUEST),
        require_reason=True,
        require_evidence_for_damaged=True,
    )
    assert required_fields(IntentType.RETURN_REQUEST, strict, reason="wrong size") == [
        FIELD_ORDER_REFERENCE,
        FIELD_REASON,
    ]
    assert required_fields(IntentType.RETURN_REQUEST, strict, text="it came broken") == [
        FIELD_ORDER_REFERENCE,
        FIELD_REASON,
        FIELD_EVIDENCE,
    ]


def test_conversation_id_is_stable_per_thread() -> None:
    first = conversation_id_for("t1", "thread-a")
    assert first == conversation_id_for("t1", "thread-a")
    assert first != conversation_id_for("t2", "thread-a")


def test_plan_allotments() -> None:
    assert plan_allotment("solopreneur") == 11
    assert plan_allotment("growth") == 60
    assert plan_allotment("scale") == 114
    assert plan_allotment("nonexistent") == 11
