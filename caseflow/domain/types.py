from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class IntentType(str, Enum):
    RETURN_REQUEST = "return_request"
    PROMO_CODE_ISSUE = "promo_code_issue"
    SUBSCRIPTION_CHANGE = "subscription_change"
    UNKNOWN = "unknown"


class ExtractionSource(str, Enum):
    PATTERN = "pattern"
    CLASSIFIER = "classifier"


FIELD_ORDER_REFERENCE = "order_reference"
FIELD_REASON = "reason"
FIELD_EVIDENCE = "evidence"
FIELD_PROMO_CODES = "promo_codes"
FIELD_SUBSCRIPTION_REFERENCE = "subscription_reference"
FIELD_SUBSCRIPTION_ACTION = "subscription_action"

KNOWN_FIELDS = (
    FIELD_ORDER_REFERENCE,
    FIELD_REASON,
    FIELD_EVIDENCE,
    FIELD_PROMO_CODES,
    FIELD_SUBSCRIPTION_REFERENCE,
    FIELD_SUBSCRIPTION_ACTION,
)


@dataclass(frozen=True)
class InboundMessage:
    tenant_id: str
    thread_id: str
    message_id: str
    customer_email: str
    subject: str
    body: str
    attachments: tuple[str, ...] = ()
    received_at: datetime | None = None

    @property
    def text(self) -> str:
        return f"{self.subject}\n{self.body}".strip()


@dataclass(frozen=True)
class ExtractionResult:
    intent: IntentType
    confidence: int
    fields: dict[str, str]
    source: ExtractionSource


@dataclass(frozen=True)
class Order:
    # Normalized view of an order or subscription returned by the order platform.
    id: str
    reference: str
    status: str
    total: Decimal
    created_at: datetime
    customer_email: str | None = None
    kind: str = "order"
    currency: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "reference": self.reference,
            "status": self.status,
            "total": str(self.total),
            "created_at": self.created_at.isoformat(),
            "customer_email": self.customer_email,
            "kind": self.kind,
            "currency": self.currency,
        }


class DecisionOutcome(str, Enum):
    APPROVE = "approve"
    DENY = "deny"
    ESCALATE = "escalate"


class ActionType(str, Enum):
    REFUND = "refund"
    PAUSE_SUBSCRIPTION = "pause_subscription"
    RESUME_SUBSCRIPTION = "resume_subscription"
    CANCEL_SUBSCRIPTION = "cancel_subscription"


@dataclass(frozen=True)
class PlannedAction:
    action_type: ActionType
    target: str
    amount: Decimal | None = None


@dataclass(frozen=True)
class Decision:
    outcome: DecisionOutcome
    reason: str
    rule: str
    action: PlannedAction | None = None


@dataclass(frozen=True)
class ActionResult:
    success: bool
    external_id: str | None = None
    amount: Decimal | None = None
    retryable: bool = False
    error: str | None = None


class Outcome(str, Enum):
    INFO_REQUESTED = "info_requested"
    APPROVED = "approved"
    DENIED = "denied"
    ESCALATED = "escalated"
    QUOTA_EXHAUSTED = "quota_exhausted"
    ACTION_FAILED = "action_failed"
    IGNORED = "ignored"
