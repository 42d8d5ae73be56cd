from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Any, Callable, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from caseflow.domain.types import (
    FIELD_EVIDENCE,
    FIELD_ORDER_REFERENCE,
    FIELD_PROMO_CODES,
    FIELD_REASON,
    FIELD_SUBSCRIPTION_ACTION,
    FIELD_SUBSCRIPTION_REFERENCE,
    KNOWN_FIELDS,
    ExtractionResult,
    ExtractionSource,
    IntentType,
)
from caseflow.providers.classifier.base import ClassifierProvider
from caseflow.services.quota import SERVICE_LLM, QuotaService
from caseflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

PATTERN_CONFIDENCE = 90
EVIDENCE_PROVIDED = "provided"

_ORDER_PATTERNS = (
    re.compile(r"#([A-Z0-9\-]+)"),
    re.compile(r"order[:\s#]+([A-Z0-9\-]+)", re.IGNORECASE),
    re.compile(r"(HFB-[A-Z0-9\-]+)", re.IGNORECASE),
    re.compile(r"\b([A-Z0-9]{3,}-[A-Z0-9]{3,})\b"),
)
_SUBSCRIPTION_PATTERNS = (
    re.compile(r"subscription\s*#?(\d{4,})", re.IGNORECASE),
    re.compile(r"\bsub\s*#?(\d{4,})", re.IGNORECASE),
    re.compile(r"membership\s*#?(\d{4,})", re.IGNORECASE),
    re.compile(r"#(\d{4,})"),
)
_SUBSCRIPTION_ACTIONS = (
    ("pause", re.compile(r"\bpaus(e|ing)\b", re.IGNORECASE)),
    ("resume", re.compile(r"\b(resume|restart|reactivate)\b", re.IGNORECASE)),
    ("cancel", re.compile(r"\bcancel(l?ing|l?ed)?\b", re.IGNORECASE)),
)
_PROMO_PATTERNS = (
    re.compile(r"(?:code|promo|coupon|discount)[:\s]+([A-Z0-9]{3,15})\b", re.IGNORECASE),
)
_PROMO_EXCLUDED = {
    "EMAIL", "ORDER", "TOTAL", "PRICE", "THANK", "HELLO", "CUSTOMER", "SERVICE", "SUPPORT",
    "REFUND", "RETURN", "SHIPPING", "DELIVERY", "WORK", "DIDN", "WASN", "THE", "FOR", "AND",
    "NOT", "YOUR", "THAT", "THIS", "WITH", "WORKING", "APPLIED",
}
_RETURN_REASONS = ("damaged", "defective", "wrong size", "wrong item", "not as described", "changed mind")
_DAMAGE_WORDS = ("damaged", "defective", "broken")
_EVIDENCE_WORDS = ("photo", "image", "picture", "attachment")

_INTENT_KEYWORDS: dict[IntentType, re.Pattern[str]] = {
    IntentType.RETURN_REQUEST: re.compile(
        r"\b(return|returning|send (it|them) back|damaged|defective|wrong (size|item)|not as described)\b",
        re.IGNORECASE,
    ),
    IntentType.PROMO_CODE_ISSUE: re.compile(
        r"\b(promo|coupon|discount code|promo code|voucher)\b", re.IGNORECASE
    ),
    IntentType.SUBSCRIPTION_CHANGE: re.compile(r"\b(subscription|membership)\b", re.IGNORECASE),
}


def classification_schema() -> dict[str, Any]:
    # Strict schema: every key is required and nothing else is allowed.
    return {
        "type": "object",
        "additionalProperties": False,
        "required": ["intent", "confidence", "fields"],
        "properties": {
            "intent": {"type": "string", "enum": [intent.value for intent in IntentType]},
            "confidence": {"type": "integer"},
            "fields": {
                "type": "object",
                "additionalProperties": False,
                "required": list(KNOWN_FIELDS),
                "properties": {name: {"type": ["string", "null"]} for name in KNOWN_FIELDS},
            },
        },
    }


class ClassificationPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    intent: IntentType
    confidence: int = Field(ge=0, le=100)
    fields: dict[str, str | None] = Field(default_factory=dict)

    def known_fields(self) -> dict[str, str]:
        return {
            name: value.strip()
            for name, value in self.fields.items()
            if name in KNOWN_FIELDS and isinstance(value, str) and value.strip()
        }


def find_order_reference(text: str) -> str | None:
    for pattern in _ORDER_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(1).strip()
            if len(candidate) >= 5:
                return candidate
    return None


def find_subscription_reference(text: str) -> str | None:
    for pattern in _SUBSCRIPTION_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def find_subscription_action(text: str) -> str | None:
    for action, pattern in _SUBSCRIPTION_ACTIONS:
        if pattern.search(text):
            return action
    return None


def find_promo_codes(text: str) -> list[str]:
    codes: list[str] = []
    for pattern in _PROMO_PATTERNS:
        for match in pattern.finditer(text):
            code = match.group(1).upper()
            if code in _PROMO_EXCLUDED or code in codes:
                continue
            codes.append(code)
    return codes


def find_return_reason(text: str) -> str | None:
    lowered = text.lower()
    for reason in _RETURN_REASONS:
        if reason in lowered:
            return reason
    return None


def is_damage_claim(text: str) -> bool:
    lowered = text.lower()
    return any(word in lowered for word in _DAMAGE_WORDS)


def has_evidence(text: str, attachments: Iterable[str] = ()) -> bool:
    if any(attachments):
        return True
    lowered = text.lower()
    return any(word in lowered for word in _EVIDENCE_WORDS)


_FIELD_MATCHERS: tuple[tuple[str, Callable[[str], Any]], ...] = (
    (FIELD_ORDER_REFERENCE, find_order_reference),
    (FIELD_SUBSCRIPTION_REFERENCE, find_subscription_reference),
    (FIELD_SUBSCRIPTION_ACTION, find_subscription_action),
    (FIELD_PROMO_CODES, lambda text: ",".join(find_promo_codes(text)) or None),
    (FIELD_REASON, find_return_reason),
)


def match_fields(
    text: str,
    attachments: Iterable[str] = (),
    *,
    wanted: Iterable[str] | None = None,
) -> dict[str, str]:
    """Run the deterministic field matchers in priority order."""
    wanted_set = set(wanted) if wanted is not None else None
    found: dict[str, str] = {}
    for name, matcher in _FIELD_MATCHERS:
        if wanted_set is not None and name not in wanted_set:
            continue
        value = matcher(text)
        if value:
            found[name] = value
    if (wanted_set is None or FIELD_EVIDENCE in wanted_set) and has_evidence(text, attachments):
        found[FIELD_EVIDENCE] = EVIDENCE_PROVIDED
    return found


def match_intents(text: str) -> set[IntentType]:
    return {intent for intent, pattern in _INTENT_KEYWORDS.items() if pattern.search(text)}


@dataclass(frozen=True)
class FieldExtraction:
    fields: dict[str, str]
    source: ExtractionSource


class Extractor:
    """Deterministic matchers first, then one schema-constrained classifier call when inconclusive."""

    def __init__(
        self,
        *,
        classifier: ClassifierProvider | None,
        quota: QuotaService | None = None,
    ) -> None:
        self._classifier = classifier
        self._quota = quota

    async def extract(
        self,
        text: str,
        *,
        tenant_id: str,
        attachments: Iterable[str] = (),
    ) -> ExtractionResult:
        attachments = tuple(attachments)
        fields = match_fields(text, attachments)
        intents = match_intents(text)
        if len(intents) == 1:
            increment_counter("extraction_pattern_total")
            return ExtractionResult(
                intent=next(iter(intents)),
                confidence=PATTERN_CONFIDENCE,
                fields=fields,
                source=ExtractionSource.PATTERN,
            )

        payload = await self._classify(text, tenant_id=tenant_id)
        if payload is None:
            return ExtractionResult(
                intent=IntentType.UNKNOWN,
                confidence=0,
                fields=fields,
                source=ExtractionSource.CLASSIFIER,
            )
        # Deterministic values win over model output for the same field.
        merged = {**payload.known_fields(), **fields}
        return ExtractionResult(
            intent=payload.intent,
            confidence=payload.confidence,
            fields=merged,
            source=ExtractionSource.CLASSIFIER,
        )

    async def extract_fields(
        self,
        text: str,
        *,
        tenant_id: str,
        wanted: Iterable[str],
        attachments: Iterable[str] = (),
        min_confidence: int = 0,
    ) -> FieldExtraction:
        """Fill only the still-missing fields of a known conversation."""
        wanted_set = set(wanted)
        found = match_fields(text, attachments, wanted=wanted_set)
        if wanted_set <= set(found):
            return FieldExtraction(fields=found, source=ExtractionSource.PATTERN)

        payload = await self._classify(text, tenant_id=tenant_id)
        if payload is None or payload.confidence < min_confidence:
            return FieldExtraction(fields=found, source=ExtractionSource.PATTERN)
        extra = {
            name: value
            for name, value in payload.known_fields().items()
            if name in wanted_set and name not in found
        }
        return FieldExtraction(fields={**found, **extra}, source=ExtractionSource.CLASSIFIER)

    async def _classify(self, text: str, *, tenant_id: str) -> ClassificationPayload | None:
        if self._classifier is None:
            return None
        if self._quota is not None:
            decision = await self._quota.check_and_consume(tenant_id, SERVICE_LLM)
            if not decision.allowed:
                logger.warning("classifier_quota_blocked tenant_id=%s", tenant_id)
                return None
        increment_counter("extraction_classifier_total")
        raw = await self._classifier.classify(text, classification_schema())
        try:
            return ClassificationPayload.model_validate(raw)
        except ValidationError as exc:
            increment_counter("extraction_classifier_invalid_total")
            logger.warning("classifier_output_invalid tenant_id=%s errors=%s", tenant_id, exc.error_count())
            return ClassificationPayload(intent=IntentType.UNKNOWN, confidence=0)
