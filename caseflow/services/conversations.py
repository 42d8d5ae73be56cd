from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable
from uuid import NAMESPACE_URL, uuid5

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseflow.core.config import Settings, get_settings
from caseflow.core.errors import (
    CollaboratorUnavailableError,
    InputAmbiguousError,
    PolicyViolationError,
    ThreadBusyError,
)
from caseflow.domain.models import Conversation
from caseflow.domain.state import ConversationState, ensure_transition
from caseflow.domain.types import (
    FIELD_EVIDENCE,
    FIELD_ORDER_REFERENCE,
    FIELD_REASON,
    FIELD_SUBSCRIPTION_ACTION,
    FIELD_SUBSCRIPTION_REFERENCE,
    ActionResult,
    Decision,
    DecisionOutcome,
    InboundMessage,
    IntentType,
    Order,
    Outcome,
)
from caseflow.persistence.repos import conversations as conversations_repo
from caseflow.providers.commerce.base import KIND_ORDER, KIND_SUBSCRIPTION, OrderLookup
from caseflow.services.actions import ActionExecutor
from caseflow.services.audit import ACTOR_AI, ACTOR_SYSTEM, record_event
from caseflow.services.eligibility import evaluate
from caseflow.services.extraction import Extractor, is_damage_claim
from caseflow.services.locks import serialize_thread
from caseflow.services.notifications import templates
from caseflow.services.notifications.dispatcher import (
    NotificationDispatcher,
    NotificationPayload,
    conversation_key,
)
from caseflow.services.policies import ResolvedPolicy, resolve_policy
from caseflow.services.quota import SERVICE_AUTOMATION, QuotaService
from caseflow.services.safety import BusinessSafetyGuard
from caseflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ACTION_NONE = "none"
ACTION_PENDING = "pending"
ACTION_SUCCEEDED = "succeeded"
ACTION_FAILED = "failed"

REASON_ATTEMPTS_EXHAUSTED = "information not provided within attempt budget"
REASON_UNRESPONSIVE = "customer unresponsive"
REASON_QUOTA_EXHAUSTED = "automation quota exhausted, upgrade required"
REASON_ACTION_INTERRUPTED = "action outcome unknown after interrupted processing"

# Subscriptions a missing reference may be inferred from, most recent first.
_INFERABLE_SUBSCRIPTION_STATUSES = frozenset({"active", "on-hold"})


def conversation_id_for(tenant_id: str, thread_id: str) -> str:
    # Stable across redeliveries so notification keys collapse onto the same conversation.
    return str(uuid5(NAMESPACE_URL, f"{tenant_id}:{thread_id}"))


@dataclass(frozen=True)
class ConversationView:
    id: str
    tenant_id: str
    thread_id: str
    customer_email: str
    intent_type: str
    intent_confidence: int
    state: str
    missing_fields: list[str]
    collected_fields: dict[str, Any]
    follow_up_count: int
    max_follow_ups: int
    order_snapshot: dict[str, Any] | None
    action_status: str
    action_retryable: bool
    action_external_id: str | None
    resolution_reason: str | None
    resolution_rule: str | None
    resolved_at: datetime | None
    created_at: datetime
    last_activity_at: datetime

    @classmethod
    def from_model(cls, row: Conversation) -> "ConversationView":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            thread_id=row.thread_id,
            customer_email=row.customer_email,
            intent_type=row.intent_type,
            intent_confidence=row.intent_confidence,
            state=row.state,
            missing_fields=list(row.missing_fields or []),
            collected_fields=dict(row.collected_fields or {}),
            follow_up_count=row.follow_up_count,
            max_follow_ups=row.max_follow_ups,
            order_snapshot=row.order_snapshot,
            action_status=row.action_status,
            action_retryable=row.action_retryable,
            action_external_id=row.action_external_id,
            resolution_reason=row.resolution_reason,
            resolution_rule=row.resolution_rule,
            resolved_at=row.resolved_at,
            created_at=row.created_at,
            last_activity_at=row.last_activity_at,
        )


@dataclass(frozen=True)
class MessageResult:
    outcome: Outcome
    conversation: ConversationView
    reason: str | None = None


@dataclass
class _Draft:
    # Working copy of one conversation; written back in a single transaction.
    id: str
    tenant_id: str
    thread_id: str
    customer_email: str
    originating_message_id: str
    subject: str | None
    intent: IntentType
    confidence: int
    state: ConversationState
    collected: dict[str, Any]
    missing: list[str]
    follow_up_count: int
    max_follow_ups: int
    created_at: datetime
    is_new: bool
    order_snapshot: dict[str, Any] | None = None
    action_status: str = ACTION_NONE
    action_retryable: bool = False
    action_external_id: str | None = None
    resolution_reason: str | None = None
    resolution_rule: str | None = None
    resolved_at: datetime | None = None
    events: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_model(cls, row: Conversation) -> "_Draft":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            thread_id=row.thread_id,
            customer_email=row.customer_email,
            originating_message_id=row.originating_message_id,
            subject=row.subject,
            intent=IntentType(row.intent_type),
            confidence=row.intent_confidence,
            state=ConversationState(row.state),
            collected=dict(row.collected_fields or {}),
            missing=list(row.missing_fields or []),
            follow_up_count=row.follow_up_count,
            max_follow_ups=row.max_follow_ups,
            created_at=row.created_at,
            is_new=False,
            order_snapshot=row.order_snapshot,
            action_status=row.action_status,
            action_retryable=row.action_retryable,
            action_external_id=row.action_external_id,
            resolution_reason=row.resolution_reason,
            resolution_rule=row.resolution_rule,
            resolved_at=row.resolved_at,
        )

    def move(
        self,
        target: ConversationState,
        *,
        now: datetime,
        reason: str | None = None,
        rule: str | None = None,
        actor_type: str = ACTOR_AI,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        ensure_transition(self.state, target)
        previous = self.state
        self.state = target
        if target.is_terminal:
            self.resolution_reason = reason
            self.resolution_rule = rule
            self.resolved_at = now
        self.note(
            f"conversation.{target.value}",
            now=now,
            outcome=target.value,
            actor_type=actor_type,
            metadata={
                "from_state": previous.value,
                "to_state": target.value,
                "reason": reason,
                "rule": rule,
                **(metadata or {}),
            },
        )
        if previous is ConversationState.COLLECTING_INFO:
            self.missing = []

    def note(
        self,
        event_type: str,
        *,
        now: datetime,
        outcome: str,
        actor_type: str = ACTOR_AI,
        metadata: dict[str, Any] | None = None,
        error_code: str | None = None,
    ) -> None:
        self.events.append(
            {
                "occurred_at": now,
                "tenant_id": self.tenant_id,
                "actor_type": actor_type,
                "actor_id": "conversation_manager",
                "event_type": event_type,
                "outcome": outcome,
                "resource_type": "conversation",
                "resource_id": self.id,
                "customer_email": self.customer_email,
                "metadata": {
                    "intent": self.intent.value,
                    "confidence": self.confidence,
                    "missing_fields": list(self.missing),
                    "follow_up_count": self.follow_up_count,
                    **(metadata or {}),
                },
                "error_code": error_code,
            }
        )

    def apply_to(self, row: Conversation, *, now: datetime) -> None:
        row.intent_type = self.intent.value
        row.intent_confidence = self.confidence
        row.state = self.state.value
        row.collected_fields = dict(self.collected)
        row.missing_fields = list(self.missing)
        row.follow_up_count = self.follow_up_count
        row.max_follow_ups = self.max_follow_ups
        row.order_snapshot = self.order_snapshot
        row.action_status = self.action_status
        row.action_retryable = self.action_retryable
        row.action_external_id = self.action_external_id
        row.resolution_reason = self.resolution_reason
        row.resolution_rule = self.resolution_rule
        row.resolved_at = self.resolved_at
        row.last_activity_at = now

    def new_model(self, *, now: datetime) -> Conversation:
        row = Conversation(
            id=self.id,
            tenant_id=self.tenant_id,
            thread_id=self.thread_id,
            customer_email=self.customer_email,
            originating_message_id=self.originating_message_id,
            subject=self.subject,
            created_at=self.created_at,
        )
        self.apply_to(row, now=now)
        return row


@dataclass(frozen=True)
class _Notice:
    key: str
    message: templates.RenderedMessage


class ConversationManager:
    """Drives one inbound message through extraction, collection, evaluation and action.

    Messages of a thread are applied one at a time. All I/O for a message
    (extraction, order lookup, quota, action, gating notifications) happens
    before a single transaction writes the conversation and its audit rows, so
    a collaborator failure leaves the stored conversation untouched and the
    message can be redelivered. The one exception is a mutating action: it is
    committed as pending before it runs, and a redelivery that finds it still
    pending escalates instead of running it again. Terminal notifications are
    sent after the commit and never roll the state back.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        extractor: Extractor,
        orders: OrderLookup,
        executor: ActionExecutor,
        quota: QuotaService,
        dispatcher: NotificationDispatcher,
        safety: BusinessSafetyGuard | None = None,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._extractor = extractor
        self._orders = orders
        self._executor = executor
        self._quota = quota
        self._dispatcher = dispatcher
        self._safety = safety
        self._settings = settings or get_settings()
        self._time_provider = time_provider or (lambda: datetime.now(timezone.utc))

    async def handle_message(self, message: InboundMessage) -> MessageResult:
        async with serialize_thread(message.tenant_id, message.thread_id):
            return await self._handle(message)

    async def _handle(self, message: InboundMessage) -> MessageResult:
        conversation_id = conversation_id_for(message.tenant_id, message.thread_id)
        async with self._session_factory() as session:
            row = await conversations_repo.get_conversation(
                session, conversation_id, tenant_id=message.tenant_id
            )
        now = self._time_provider()

        if row is None:
            draft, policy, outcome = await self._start(message, conversation_id, now)
        else:
            state = ConversationState(row.state)
            if state.is_terminal:
                return await self._ignore(row, message, now)
            draft = _Draft.from_model(row)
            async with self._session_factory() as session:
                policy = await resolve_policy(session, draft.tenant_id, draft.intent, self._settings)
            outcome = await self._continue(draft, policy, message, now)

        notices: list[_Notice] = []
        if draft.state is ConversationState.EVALUATING:
            outcome, notices = await self._evaluate(draft, policy, message, now)

        view = await self._commit(draft, now)
        increment_counter(f"conversations_outcome_total.{outcome.value}")
        logger.info(
            "conversation_message_handled tenant_id=%s conversation_id=%s outcome=%s state=%s",
            draft.tenant_id,
            draft.id,
            outcome.value,
            draft.state.value,
        )
        for notice in notices:
            await self._send_terminal(draft, notice, customer_request=message.text)
        return MessageResult(outcome=outcome, conversation=view, reason=draft.resolution_reason)

    async def _start(
        self,
        message: InboundMessage,
        conversation_id: str,
        now: datetime,
    ) -> tuple[_Draft, ResolvedPolicy, Outcome]:
        extraction = await self._extractor.extract(
            message.text,
            tenant_id=message.tenant_id,
            attachments=message.attachments,
        )
        async with self._session_factory() as session:
            policy = await resolve_policy(session, message.tenant_id, extraction.intent, self._settings)

        draft = _Draft(
            id=conversation_id,
            tenant_id=message.tenant_id,
            thread_id=message.thread_id,
            customer_email=message.customer_email,
            originating_message_id=message.message_id,
            subject=message.subject,
            intent=extraction.intent,
            confidence=extraction.confidence,
            state=ConversationState.COLLECTING_INFO,
            collected=dict(extraction.fields),
            missing=[],
            follow_up_count=0,
            max_follow_ups=policy.max_follow_ups,
            created_at=now,
            is_new=True,
        )
        draft.note(
            "conversation.created",
            now=now,
            outcome=ConversationState.COLLECTING_INFO.value,
            metadata={"source": extraction.source.value, "message_id": message.message_id},
        )

        if extraction.confidence < policy.confidence_threshold:
            ambiguity = InputAmbiguousError(extraction.confidence, policy.confidence_threshold)
            increment_counter("conversations_low_confidence_total")
            draft.move(
                ConversationState.ESCALATED,
                now=now,
                reason=str(ambiguity),
                rule="low_confidence",
                metadata={"threshold": policy.confidence_threshold},
            )
            return draft, policy, Outcome.ESCALATED

        await self._infer_subscription(draft)
        draft.missing = self._missing_fields(draft, policy, message)
        if not draft.missing:
            draft.move(ConversationState.EVALUATING, now=now)
            return draft, policy, Outcome.INFO_REQUESTED

        await self._request_info(draft, message, now, attempt=0)
        return draft, policy, Outcome.INFO_REQUESTED

    async def _continue(
        self,
        draft: _Draft,
        policy: ResolvedPolicy,
        message: InboundMessage,
        now: datetime,
    ) -> Outcome:
        if draft.state is ConversationState.EVALUATING:
            return Outcome.INFO_REQUESTED

        wanted = list(draft.missing)
        extraction = await self._extractor.extract_fields(
            message.text,
            tenant_id=draft.tenant_id,
            wanted=wanted,
            attachments=message.attachments,
            min_confidence=policy.confidence_threshold,
        )
        filled = {name: value for name, value in extraction.fields.items() if name in wanted}
        draft.collected.update(filled)
        await self._infer_subscription(draft)
        draft.missing = self._missing_fields(draft, policy, message, previous=wanted)
        if filled:
            draft.note(
                "conversation.fields_collected",
                now=now,
                outcome="collected",
                metadata={"fields": sorted(filled), "source": extraction.source.value},
            )

        if not draft.missing:
            draft.move(ConversationState.EVALUATING, now=now)
            return Outcome.INFO_REQUESTED

        attempt = draft.follow_up_count + 1
        if attempt >= draft.max_follow_ups:
            draft.follow_up_count = attempt
            draft.move(
                ConversationState.ESCALATED,
                now=now,
                reason=REASON_ATTEMPTS_EXHAUSTED,
                rule="attempt_budget_exhausted",
                metadata={"max_follow_ups": draft.max_follow_ups},
            )
            return Outcome.ESCALATED

        await self._request_info(draft, message, now, attempt=attempt)
        # Advanced only once the follow-up is out.
        draft.follow_up_count = attempt
        return Outcome.INFO_REQUESTED

    def _missing_fields(
        self,
        draft: _Draft,
        policy: ResolvedPolicy,
        message: InboundMessage,
        *,
        previous: list[str] | None = None,
    ) -> list[str]:
        required = required_fields(
            draft.intent,
            policy,
            reason=draft.collected.get(FIELD_REASON),
            text=message.text,
        )
        ordered = list(dict.fromkeys([*(previous or []), *required]))
        return [name for name in ordered if not draft.collected.get(name)]

    async def _infer_subscription(self, draft: _Draft) -> None:
        if draft.intent is not IntentType.SUBSCRIPTION_CHANGE or draft.collected.get(FIELD_SUBSCRIPTION_REFERENCE):
            return
        subscriptions = await self._orders.find_orders_by_customer(
            draft.tenant_id, draft.customer_email, kind=KIND_SUBSCRIPTION
        )
        for subscription in subscriptions:
            if subscription.status.lower() in _INFERABLE_SUBSCRIPTION_STATUSES:
                draft.collected[FIELD_SUBSCRIPTION_REFERENCE] = subscription.reference
                logger.info(
                    "subscription_reference_inferred tenant_id=%s conversation_id=%s subscription=%s",
                    draft.tenant_id,
                    draft.id,
                    subscription.reference,
                )
                return

    async def _request_info(self, draft: _Draft, message: InboundMessage, now: datetime, *, attempt: int) -> None:
        # Gating notice: a delivery failure aborts the message before anything is stored.
        rendered = templates.info_request(draft.intent, draft.missing, follow_up=attempt > 0)
        sent = await self._dispatcher.send_once(
            conversation_key(draft.id, "info_request", attempt),
            NotificationPayload(
                tenant_id=draft.tenant_id,
                recipient=draft.customer_email,
                subject=rendered.subject,
                body=rendered.body,
                template_tag=rendered.template_tag,
            ),
        )
        draft.note(
            "conversation.info_requested",
            now=now,
            outcome="sent" if sent else "duplicate",
            metadata={"attempt": attempt, "message_id": message.message_id},
        )

    async def _evaluate(
        self,
        draft: _Draft,
        policy: ResolvedPolicy,
        message: InboundMessage,
        now: datetime,
    ) -> tuple[Outcome, list[_Notice]]:
        if draft.action_status == ACTION_PENDING:
            return self._abandon_reserved_action(draft, now), []

        order = await self._lookup(draft, policy)
        if order is not None:
            draft.order_snapshot = order.snapshot()
        decision = evaluate(
            intent=draft.intent,
            fields={name: str(value) for name, value in draft.collected.items()},
            order=order,
            policy=policy,
            now=now,
        )
        reference = order.reference if order is not None else _reference_of(draft)
        decision_meta = {"decision": decision.outcome.value}

        if decision.outcome is DecisionOutcome.ESCALATE:
            draft.move(
                ConversationState.ESCALATED, now=now, reason=decision.reason, rule=decision.rule, metadata=decision_meta
            )
            return Outcome.ESCALATED, []

        if decision.outcome is DecisionOutcome.DENY:
            draft.move(
                ConversationState.DENIED, now=now, reason=decision.reason, rule=decision.rule, metadata=decision_meta
            )
            rendered = templates.denial(draft.intent, reason=decision.reason, reference=reference)
            return Outcome.DENIED, [_Notice(conversation_key(draft.id, "denial"), rendered)]

        gate = await self._quota.check_and_consume(draft.tenant_id, SERVICE_AUTOMATION)
        if not gate.allowed:
            draft.move(
                ConversationState.ESCALATED,
                now=now,
                reason=REASON_QUOTA_EXHAUSTED,
                rule="quota_exhausted",
                metadata={**decision_meta, "blocked_period": gate.blocked_period},
            )
            return Outcome.QUOTA_EXHAUSTED, []

        if not policy.enable_auto_action or decision.action is None:
            draft.move(
                ConversationState.APPROVED, now=now, reason=decision.reason, rule=decision.rule, metadata=decision_meta
            )
            rendered = templates.approval(
                draft.intent,
                reference=reference,
                action_type=None,
                amount=None,
                instructions=_instructions(draft.intent, policy),
            )
            return Outcome.APPROVED, [_Notice(conversation_key(draft.id, "approval"), rendered)]

        await self._reserve_action(draft, decision, now)
        result = await self._executor.execute(
            tenant_id=draft.tenant_id,
            action=decision.action,
            conversation_id=draft.id,
            customer_email=draft.customer_email,
        )
        return self._settle_action(draft, policy, decision, result, reference, now)

    async def _reserve_action(self, draft: _Draft, decision: Decision, now: datetime) -> None:
        # Recorded before the mutation so a lost final commit can never execute it twice.
        assert decision.action is not None
        draft.action_status = ACTION_PENDING
        draft.note(
            "action.reserved",
            now=now,
            outcome=ACTION_PENDING,
            metadata={"action_type": decision.action.action_type.value, "target": decision.action.target},
        )
        await self._commit(draft, now)
        draft.is_new = False
        draft.events.clear()

    def _abandon_reserved_action(self, draft: _Draft, now: datetime) -> Outcome:
        # The platform may or may not have applied the action; a human has to check.
        increment_counter("conversations_action_interrupted_total")
        logger.warning(
            "reserved_action_abandoned tenant_id=%s conversation_id=%s",
            draft.tenant_id,
            draft.id,
        )
        draft.action_status = ACTION_FAILED
        draft.action_retryable = True
        draft.move(
            ConversationState.ESCALATED,
            now=now,
            reason=REASON_ACTION_INTERRUPTED,
            rule="action_interrupted",
        )
        return Outcome.ESCALATED

    def _settle_action(
        self,
        draft: _Draft,
        policy: ResolvedPolicy,
        decision: Decision,
        result: ActionResult,
        reference: str | None,
        now: datetime,
    ) -> tuple[Outcome, list[_Notice]]:
        action = decision.action
        assert action is not None
        action_meta = {
            "decision": decision.outcome.value,
            "action_type": action.action_type.value,
            "external_id": result.external_id,
        }
        if not result.success:
            draft.action_status = ACTION_FAILED
            draft.action_retryable = result.retryable
            draft.move(
                ConversationState.ESCALATED,
                now=now,
                reason=f"approved action failed: {result.error or 'unknown error'}",
                rule="action_failed",
                metadata={**action_meta, "retryable": result.retryable},
            )
            rendered = templates.action_apology(draft.intent, reference=reference)
            return Outcome.ACTION_FAILED, [_Notice(conversation_key(draft.id, "action_apology"), rendered)]

        draft.action_status = ACTION_SUCCEEDED
        draft.action_retryable = False
        draft.action_external_id = result.external_id
        draft.move(
            ConversationState.APPROVED, now=now, reason=decision.reason, rule=decision.rule, metadata=action_meta
        )
        rendered = templates.approval(
            draft.intent,
            reference=reference,
            action_type=action.action_type.value,
            amount=result.amount if result.amount is not None else action.amount,
            instructions=_instructions(draft.intent, policy),
        )
        return Outcome.APPROVED, [_Notice(conversation_key(draft.id, "approval"), rendered)]

    async def _lookup(self, draft: _Draft, policy: ResolvedPolicy) -> Order | None:
        # Disabled and unknown requests escalate before the order matters.
        if not policy.enabled or draft.intent is IntentType.UNKNOWN:
            return None
        if draft.intent is IntentType.SUBSCRIPTION_CHANGE:
            reference = draft.collected.get(FIELD_SUBSCRIPTION_REFERENCE)
            kind = KIND_SUBSCRIPTION
        else:
            reference = draft.collected.get(FIELD_ORDER_REFERENCE)
            kind = KIND_ORDER
        if not reference:
            return None
        return await self._orders.find_order(draft.tenant_id, str(reference), kind=kind)

    async def _commit(self, draft: _Draft, now: datetime) -> ConversationView:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    if draft.is_new:
                        row = draft.new_model(now=now)
                        session.add(row)
                    else:
                        row = await conversations_repo.get_conversation(session, draft.id, for_update=True)
                        if row is None:
                            raise ThreadBusyError(f"conversation {draft.id} disappeared while processing")
                        draft.apply_to(row, now=now)
                    for event in draft.events:
                        await record_event(session=session, best_effort=False, **event)
                    await session.flush()
                    view = ConversationView.from_model(row)
            except IntegrityError as exc:
                # Another process created the thread first; redelivery will continue it.
                logger.warning(
                    "conversation_create_conflict tenant_id=%s conversation_id=%s",
                    draft.tenant_id,
                    draft.id,
                    exc_info=exc,
                )
                raise ThreadBusyError(f"conversation {draft.id} was created concurrently") from exc
        return view

    async def _send_terminal(self, draft: _Draft, notice: _Notice, *, customer_request: str) -> None:
        # Fire-and-forget: the state is already committed.
        body = notice.message.body
        try:
            if self._safety is not None:
                body = await self._safety.guard(
                    body,
                    customer_request=customer_request,
                    intent=draft.intent,
                    tenant_id=draft.tenant_id,
                    conversation_id=draft.id,
                )
            await self._dispatcher.send_once(
                notice.key,
                NotificationPayload(
                    tenant_id=draft.tenant_id,
                    recipient=draft.customer_email,
                    subject=notice.message.subject,
                    body=body,
                    template_tag=notice.message.template_tag,
                ),
            )
        except (CollaboratorUnavailableError, PolicyViolationError) as exc:
            increment_counter("conversations_terminal_notice_failed_total")
            logger.warning(
                "terminal_notice_failed tenant_id=%s conversation_id=%s key=%s",
                draft.tenant_id,
                draft.id,
                notice.key,
                exc_info=exc,
            )
            await record_event(
                session_factory=self._session_factory,
                occurred_at=self._time_provider(),
                tenant_id=draft.tenant_id,
                actor_type=ACTOR_SYSTEM,
                actor_id="conversation_manager",
                event_type="notification.failed",
                outcome="failure",
                resource_type="conversation",
                resource_id=draft.id,
                customer_email=draft.customer_email,
                metadata={"key": notice.key, "template_tag": notice.message.template_tag, "error": str(exc)},
                error_code=type(exc).__name__,
            )

    async def _ignore(self, row: Conversation, message: InboundMessage, now: datetime) -> MessageResult:
        increment_counter("conversations_message_ignored_total")
        logger.info(
            "conversation_message_ignored tenant_id=%s conversation_id=%s state=%s",
            row.tenant_id,
            row.id,
            row.state,
        )
        await record_event(
            session_factory=self._session_factory,
            occurred_at=now,
            tenant_id=row.tenant_id,
            actor_type=ACTOR_SYSTEM,
            actor_id="conversation_manager",
            event_type="conversation.message_ignored",
            outcome=Outcome.IGNORED.value,
            resource_type="conversation",
            resource_id=row.id,
            customer_email=row.customer_email,
            metadata={"state": row.state, "message_id": message.message_id},
        )
        return MessageResult(
            outcome=Outcome.IGNORED,
            conversation=ConversationView.from_model(row),
            reason=row.resolution_reason,
        )

    async def get_conversation(self, tenant_id: str, conversation_id: str) -> ConversationView | None:
        async with self._session_factory() as session:
            row = await conversations_repo.get_conversation(session, conversation_id, tenant_id=tenant_id)
            return ConversationView.from_model(row) if row is not None else None

    async def find_stale(
        self,
        older_than: datetime,
        *,
        tenant_id: str | None = None,
        limit: int | None = None,
    ) -> list[ConversationView]:
        """Collecting-info conversations with no activity since ``older_than``, oldest first."""
        async with self._session_factory() as session:
            rows = await conversations_repo.find_stale(
                session,
                older_than=older_than,
                tenant_id=tenant_id,
                limit=limit or self._settings.sweep_batch_size,
            )
            return [ConversationView.from_model(row) for row in rows]

    async def sweep_stale(self, now: datetime | None = None, *, limit: int | None = None) -> int:
        """Escalate idle collecting-info conversations; returns how many were escalated.

        Candidates come from the default idle timeout; each one is then held to
        its own tenant policy timeout.
        """
        now = now or self._time_provider()
        default_cutoff = now - timedelta(minutes=self._settings.automation_idle_timeout_minutes)
        candidates = await self.find_stale(default_cutoff, limit=limit)
        swept = 0
        for candidate in candidates:
            async with serialize_thread(candidate.tenant_id, candidate.thread_id):
                if await self._escalate_idle(candidate.id, now):
                    swept += 1
        if swept:
            increment_counter("conversations_swept_total", swept)
        logger.info("stale_sweep_completed candidates=%s escalated=%s", len(candidates), swept)
        return swept

    async def _escalate_idle(self, conversation_id: str, now: datetime) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                row = await conversations_repo.get_conversation(session, conversation_id, for_update=True)
                if row is None or row.state != ConversationState.COLLECTING_INFO.value:
                    return False
                policy = await resolve_policy(session, row.tenant_id, IntentType(row.intent_type), self._settings)
                if row.last_activity_at >= now - timedelta(minutes=policy.idle_timeout_minutes):
                    return False
                draft = _Draft.from_model(row)
                draft.move(
                    ConversationState.ESCALATED,
                    now=now,
                    reason=REASON_UNRESPONSIVE,
                    rule="idle_timeout",
                    actor_type=ACTOR_SYSTEM,
                    metadata={"idle_timeout_minutes": policy.idle_timeout_minutes},
                )
                draft.apply_to(row, now=now)
                for event in draft.events:
                    await record_event(session=session, best_effort=False, **event)
        logger.info("conversation_swept tenant_id=%s conversation_id=%s", draft.tenant_id, conversation_id)
        return True


def required_fields(
    intent: IntentType,
    policy: ResolvedPolicy,
    *,
    reason: str | None = None,
    text: str = "",
) -> list[str]:
    """Fields that must be collected before a request of ``intent`` can be evaluated."""
    if not policy.enabled:
        return []
    if intent is IntentType.RETURN_REQUEST:
        fields = [FIELD_ORDER_REFERENCE]
        if policy.require_reason:
            fields.append(FIELD_REASON)
        if policy.require_evidence_for_damaged and (is_damage_claim(reason or "") or is_damage_claim(text)):
            fields.append(FIELD_EVIDENCE)
        return fields
    if intent is IntentType.PROMO_CODE_ISSUE:
        return [FIELD_ORDER_REFERENCE]
    if intent is IntentType.SUBSCRIPTION_CHANGE:
        return [FIELD_SUBSCRIPTION_ACTION, FIELD_SUBSCRIPTION_REFERENCE]
    return []


def _reference_of(draft: _Draft) -> str | None:
    value = draft.collected.get(FIELD_SUBSCRIPTION_REFERENCE if draft.intent is IntentType.SUBSCRIPTION_CHANGE else FIELD_ORDER_REFERENCE)
    return str(value) if value else None


def _instructions(intent: IntentType, policy: ResolvedPolicy) -> str | None:
    if intent is IntentType.RETURN_REQUEST:
        return policy.return_instructions
    return None
