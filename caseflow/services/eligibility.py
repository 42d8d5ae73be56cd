from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping

from caseflow.domain.types import (
    FIELD_SUBSCRIPTION_ACTION,
    ActionType,
    Decision,
    DecisionOutcome,
    IntentType,
    Order,
    PlannedAction,
)
from caseflow.services.policies import (
    MISSING_ORDER_ESCALATE,
    REFUND_FIXED,
    REFUND_PERCENTAGE,
    ResolvedPolicy,
)


# Statuses after which a refund or change is meaningless.
TERMINAL_ORDER_STATUSES = frozenset({"cancelled", "refunded", "failed"})
TERMINAL_SUBSCRIPTION_STATUSES = frozenset({"cancelled", "expired", "pending-cancel"})

_SUBSCRIPTION_ACTIONS = {
    "pause": ActionType.PAUSE_SUBSCRIPTION,
    "resume": ActionType.RESUME_SUBSCRIPTION,
    "cancel": ActionType.CANCEL_SUBSCRIPTION,
}

_CENT = Decimal("0.01")


def _escalate(reason: str, rule: str) -> Decision:
    return Decision(outcome=DecisionOutcome.ESCALATE, reason=reason, rule=rule)


def _deny(reason: str, rule: str) -> Decision:
    return Decision(outcome=DecisionOutcome.DENY, reason=reason, rule=rule)


def order_age_days(order: Order, now: datetime) -> int:
    return max(0, (now - order.created_at).days)


def promo_refund_amount(total: Decimal, policy: ResolvedPolicy) -> Decimal:
    """Refund owed under the tenant's promo terms, rounded half-up to cents."""
    value = policy.refund_value or Decimal("0")
    if policy.refund_type == REFUND_PERCENTAGE:
        amount = total * value
        if policy.refund_cap is not None and amount > policy.refund_cap:
            amount = policy.refund_cap
    elif policy.refund_type == REFUND_FIXED:
        amount = min(value, total)
    else:
        amount = Decimal("0")
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def evaluate(
    *,
    intent: IntentType,
    fields: Mapping[str, str],
    order: Order | None,
    policy: ResolvedPolicy,
    now: datetime,
) -> Decision:
    """Decide approve, deny or escalate for a fully collected request.

    Pure: the order has already been looked up and ``now`` is passed in, so the
    same inputs always produce the same decision.
    """
    if not policy.enabled:
        return _escalate(f"automation is disabled for {intent.value}", "policy_disabled")
    if intent is IntentType.UNKNOWN:
        return _escalate("request type could not be determined", "unknown_intent")

    if order is None:
        reason = "the referenced order could not be located"
        if policy.missing_order_decision == MISSING_ORDER_ESCALATE:
            return _escalate(reason, "order_not_found")
        return _deny(reason, "order_not_found")

    if not policy.enable_auto_approval:
        return _escalate("auto-approval is disabled", "auto_approval_disabled")

    if intent is IntentType.SUBSCRIPTION_CHANGE:
        return _evaluate_subscription(fields, order)

    # Age failures always go to a human, never a silent denial.
    age = order_age_days(order, now)
    if age > policy.auto_approval_days:
        return _escalate(
            f"order is {age} days old, exceeds {policy.auto_approval_days} day auto-approval window",
            "approval_window_exceeded",
        )

    status = order.status.lower()
    if status in TERMINAL_ORDER_STATUSES:
        return _deny(f"order status is {status}", "order_status_terminal")

    if intent is IntentType.PROMO_CODE_ISSUE:
        return _evaluate_promo(order, policy)

    return Decision(
        outcome=DecisionOutcome.APPROVE,
        reason="meets auto-approval criteria",
        rule="auto_approval",
        action=PlannedAction(action_type=ActionType.REFUND, target=order.id, amount=order.total),
    )


def _evaluate_promo(order: Order, policy: ResolvedPolicy) -> Decision:
    if policy.refund_type not in (REFUND_PERCENTAGE, REFUND_FIXED):
        return _escalate("no promo refund terms are configured", "promo_terms_missing")
    if policy.min_order_amount is not None and order.total < policy.min_order_amount:
        return _deny(
            f"order amount ${order.total} is below the minimum of ${policy.min_order_amount}",
            "promo_below_minimum",
        )
    if policy.max_order_amount is not None and order.total > policy.max_order_amount:
        return _deny(
            f"order amount ${order.total} exceeds the maximum of ${policy.max_order_amount}",
            "promo_above_maximum",
        )
    amount = promo_refund_amount(order.total, policy)
    if amount <= 0:
        return _deny("no refund is owed under the current promotion terms", "promo_zero_refund")
    return Decision(
        outcome=DecisionOutcome.APPROVE,
        reason=f"eligible for a ${amount} promo refund",
        rule="promo_refund",
        action=PlannedAction(action_type=ActionType.REFUND, target=order.id, amount=amount),
    )


def _evaluate_subscription(fields: Mapping[str, str], subscription: Order) -> Decision:
    requested = (fields.get(FIELD_SUBSCRIPTION_ACTION) or "").lower()
    action_type = _SUBSCRIPTION_ACTIONS.get(requested)
    if action_type is None:
        return _escalate("requested subscription change is not supported", "subscription_action_unknown")

    status = subscription.status.lower()
    if status in TERMINAL_SUBSCRIPTION_STATUSES:
        return _deny(f"subscription is already {status}", "subscription_status_terminal")
    if action_type is ActionType.PAUSE_SUBSCRIPTION and status == "on-hold":
        return _deny("subscription is already paused", "subscription_already_paused")
    if action_type is ActionType.RESUME_SUBSCRIPTION and status == "active":
        return _deny("subscription is already active", "subscription_already_active")
    return Decision(
        outcome=DecisionOutcome.APPROVE,
        reason=f"subscription {requested} request is valid",
        rule="subscription_change",
        action=PlannedAction(action_type=action_type, target=subscription.id),
    )
