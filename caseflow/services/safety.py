from __future__ import annotations

from dataclasses import dataclass
import logging
import re

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseflow.core.errors import PolicyViolationError
from caseflow.domain.types import IntentType
from caseflow.services.audit import ACTOR_AI, record_event
from caseflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"
RISK_CRITICAL = "critical"

_RISK_ORDER = {RISK_LOW: 0, RISK_MEDIUM: 1, RISK_HIGH: 2, RISK_CRITICAL: 3}


@dataclass(frozen=True)
class SafetyRule:
    id: str
    pattern: re.Pattern[str]
    violation: str
    risk: str


RULES: tuple[SafetyRule, ...] = (
    SafetyRule(
        "subscription_upsell_prevention",
        re.compile(
            r"(pause.*subscription.*(cancel.*permanent|permanently|forever))"
            r"|((cancel.*permanent|permanently|forever).*pause.*subscription)",
            re.IGNORECASE,
        ),
        "offering permanent cancellation when the customer only requested a pause",
        RISK_CRITICAL,
    ),
    SafetyRule(
        "automatic_downsell_prevention",
        re.compile(r"(switch.*cheaper|downgrade.*plan|lower.*tier|reduce.*subscription)", re.IGNORECASE),
        "suggesting a downgrade the customer did not ask for",
        RISK_HIGH,
    ),
    SafetyRule(
        "negative_product_volunteering",
        re.compile(
            r"(not organic|not kosher|not vegan|not certified|however.*not|but.*not|although.*not)"
            r".*(unless.*ask|didn't.*ask)",
            re.IGNORECASE,
        ),
        "volunteering negative product information the customer did not ask for",
        RISK_HIGH,
    ),
    SafetyRule(
        "unnecessary_refund_offers",
        re.compile(
            r"(would you like.*refund|can offer.*refund|happy to refund)(?!.*customer.*ask.*refund)",
            re.IGNORECASE,
        ),
        "offering a refund the customer did not ask for",
        RISK_CRITICAL,
    ),
    SafetyRule(
        "competitor_mentions",
        re.compile(r"(try.*competitor|check.*amazon|other.*brands|alternative.*product)", re.IGNORECASE),
        "mentioning competitors or alternatives unprompted",
        RISK_CRITICAL,
    ),
    SafetyRule(
        "policy_over_disclosure",
        re.compile(r"(unfortunately.*cannot|sorry.*unable|policy.*prevent|not allowed.*policy)", re.IGNORECASE),
        "over-disclosing limitations and policies",
        RISK_MEDIUM,
    ),
)

SAFE_PAUSE_RESPONSE = (
    "I can pause your subscription for you. How long would you like it paused? I can set a specific "
    "reactivation date or pause it indefinitely until you're ready to restart.\n\n"
    "Let me know your preference and I'll take care of it right away."
)

_GENERIC_RESPONSES = {
    IntentType.SUBSCRIPTION_CHANGE: (
        "I'd be happy to help with your subscription. Let me assist you with the specific changes you need."
    ),
    IntentType.RETURN_REQUEST: "I'm here to help with your return. Let me take care of the next steps for you.",
    IntentType.PROMO_CODE_ISSUE: "I'm here to help with your promo code. Let me look into it for you.",
}
_DEFAULT_RESPONSE = "I'm here to help with your request. Let me assist you with what you need."


@dataclass(frozen=True)
class SafetyResult:
    safe: bool
    violations: tuple[str, ...]
    rule_ids: tuple[str, ...]
    risk: str
    corrected: str | None = None


def _is_pause_request(customer_request: str, intent: IntentType) -> bool:
    return intent is IntentType.SUBSCRIPTION_CHANGE and "pause" in customer_request.lower()


def generic_response(intent: IntentType) -> str:
    return _GENERIC_RESPONSES.get(intent, _DEFAULT_RESPONSE)


def safe_response(customer_request: str, intent: IntentType) -> str:
    if _is_pause_request(customer_request, intent):
        return SAFE_PAUSE_RESPONSE
    return generic_response(intent)


def validate(response: str, customer_request: str, intent: IntentType) -> SafetyResult:
    """Scan outgoing text against the business rules; critical findings carry a safe replacement."""
    violations: list[str] = []
    rule_ids: list[str] = []
    risk = RISK_LOW
    for rule in RULES:
        if rule.pattern.search(response):
            violations.append(rule.violation)
            rule_ids.append(rule.id)
            if _RISK_ORDER[rule.risk] > _RISK_ORDER[risk]:
                risk = rule.risk

    lowered = response.lower()
    if _is_pause_request(customer_request, intent) and "cancel" in lowered and "permanent" in lowered:
        violations.append("offering cancellation when the customer only wants to pause")
        rule_ids.append("pause_request_cancellation")
        risk = RISK_CRITICAL

    corrected = safe_response(customer_request, intent) if risk == RISK_CRITICAL else None
    return SafetyResult(
        safe=not violations,
        violations=tuple(violations),
        rule_ids=tuple(rule_ids),
        risk=risk,
        corrected=corrected,
    )


class BusinessSafetyGuard:
    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    async def guard(
        self,
        response: str,
        *,
        customer_request: str,
        intent: IntentType,
        tenant_id: str,
        conversation_id: str | None = None,
    ) -> str:
        """Return text that is safe to send, correcting critical violations."""
        result = validate(response, customer_request, intent)
        if result.safe:
            return response
        if result.risk != RISK_CRITICAL:
            increment_counter("safety_violations_tolerated_total")
            logger.warning(
                "safety_violation_tolerated tenant_id=%s risk=%s rules=%s",
                tenant_id,
                result.risk,
                ",".join(result.rule_ids),
            )
            return response

        corrected = result.corrected or generic_response(intent)
        if validate(corrected, customer_request, intent).risk == RISK_CRITICAL:
            corrected = generic_response(intent)
            if validate(corrected, customer_request, intent).risk == RISK_CRITICAL:
                raise PolicyViolationError(f"no safe response available for {intent.value}")

        increment_counter("safety_violations_corrected_total")
        logger.warning(
            "safety_violation_corrected tenant_id=%s conversation_id=%s rules=%s",
            tenant_id,
            conversation_id,
            ",".join(result.rule_ids),
        )
        if self._session_factory is not None:
            await record_event(
                session_factory=self._session_factory,
                tenant_id=tenant_id,
                actor_type=ACTOR_AI,
                actor_id="safety_guard",
                event_type="policy.violation_corrected",
                outcome="corrected",
                resource_type="conversation",
                resource_id=conversation_id,
                metadata={
                    "intent": intent.value,
                    "risk": result.risk,
                    "rules": list(result.rule_ids),
                    "violations": list(result.violations),
                    "original_text": response,
                    "corrected_text": corrected,
                },
            )
        return corrected
