from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from caseflow.core.errors import CollaboratorUnavailableError
from caseflow.domain.state import ConversationState
from caseflow.domain.types import FIELD_ORDER_REFERENCE, FIELD_SUBSCRIPTION_REFERENCE, Outcome
from caseflow.persistence.repos import activity as activity_repo
from caseflow.providers.classifier.fake import FakeClassifier
from caseflow.providers.commerce.base import KIND_SUBSCRIPTION
from caseflow.providers.email.fake import FakeEmailSender
from caseflow.services.container import build_engine
from caseflow.services import conversations as conversations_module
from caseflow.services.conversations import (
    ACTION_FAILED,
    ACTION_PENDING,
    ACTION_SUCCEEDED,
    REASON_ACTION_INTERRUPTED,
    REASON_ATTEMPTS_EXHAUSTED,
    REASON_QUOTA_EXHAUSTED,
    REASON_UNRESPONSIVE,
    conversation_id_for,
)
from caseflow.services.notifications.templates import (
    TAG_ACTION_APOLOGY,
    TAG_APPROVAL,
    TAG_DENIAL,
    TAG_FOLLOW_UP,
    TAG_INFO_REQUEST,
)
from caseflow.services.policies import REFUND_PERCENTAGE
from caseflow.services.quota import SERVICE_AUTOMATION
from caseflow.tests.utils.factories import make_message, make_order, seed_policy, seed_tenant


async def _events(session_factory, conversation_id: str) -> list[str]:
    async with session_factory() as session:
        entries = await activity_repo.list_entries(session, tenant_id="t1", resource_id=conversation_id, limit=100)
    return [entry.event_type for entry in reversed(entries)]


@pytest.mark.asyncio
async def test_complete_return_request_is_refunded(engine, session_factory, commerce, email) -> None:
    await seed_tenant(session_factory, "t1")
    commerce.add(make_order("HFB-12345", total="50.00"))

    result = await engine.manager.handle_message(
        make_message("I want to return order #HFB-12345, it arrived damaged")
    )

    assert result.outcome is Outcome.APPROVED
    conversation = result.conversation
    assert conversation.state == ConversationState.APPROVED.value
    assert conversation.action_status == ACTION_SUCCEEDED
    assert conversation.action_external_id == "rf-1"
    assert conversation.order_snapshot["reference"] == "HFB-12345"
    assert conversation.resolved_at is not None
    assert commerce.refunds == [("HFB-12345", Decimal("50.00"))]
    assert len(email.sent_with_tag(TAG_APPROVAL)) == 1
    assert "$50.00" in email.outbox[0].body
    assert email.sent_with_tag(TAG_INFO_REQUEST) == []

    usage = await engine.quota.get_usage("t1", SERVICE_AUTOMATION)
    assert usage.day.used == 1

    events = await _events(session_factory, conversation.id)
    assert events.index("conversation.created") < events.index("conversation.evaluating")
    assert "action.executed" in events
    assert events[-1] == "conversation.approved"


@pytest.mark.asyncio
async def test_missing_order_number_is_requested_then_collected(engine, session_factory, commerce, email) -> None:
    await seed_tenant(session_factory, "t1")
    commerce.add(make_order("HFB-12345"))

    first = await engine.manager.handle_message(
        make_message("I'd like to return my sweater please", thread_id="thread-collect")
    )
    assert first.outcome is Outcome.INFO_REQUESTED
    assert first.conversation.state == ConversationState.COLLECTING_INFO.value
    assert first.conversation.missing_fields == [FIELD_ORDER_REFERENCE]
    assert first.conversation.follow_up_count == 0
    assert len(email.sent_with_tag(TAG_INFO_REQUEST)) == 1

    second = await engine.manager.handle_message(
        make_message("Sure, it was order #HFB-12345", thread_id="thread-collect")
    )
    assert second.outcome is Outcome.APPROVED
    assert second.conversation.id == first.conversation.id
    assert second.conversation.collected_fields[FIELD_ORDER_REFERENCE] == "HFB-12345"
    assert second.conversation.missing_fields == []
    assert "conversation.fields_collected" in await _events(session_factory, first.conversation.id)


@pytest.mark.asyncio
async def test_attempt_budget_exhaustion_escalates(engine, session_factory, email) -> None:
    await seed_tenant(session_factory, "t1")
    thread = "thread-silent"

    await engine.manager.handle_message(make_message("I need to return something", thread_id=thread))
    follow_up = await engine.manager.handle_message(make_message("I can't find it", thread_id=thread))
    assert follow_up.outcome is Outcome.INFO_REQUESTED
    assert follow_up.conversation.follow_up_count == 1

    final = await engine.manager.handle_message(make_message("still looking", thread_id=thread))
    assert final.outcome is Outcome.ESCALATED
    assert final.reason == REASON_ATTEMPTS_EXHAUSTED
    assert final.conversation.state == ConversationState.ESCALATED.value
    assert final.conversation.resolution_rule == "attempt_budget_exhausted"
    assert final.conversation.missing_fields == []
    assert final.conversation.follow_up_count == final.conversation.max_follow_ups
    assert len(email.sent_with_tag(TAG_INFO_REQUEST)) == 1
    assert len(email.sent_with_tag(TAG_FOLLOW_UP)) == 1


@pytest.mark.asyncio
async def test_low_confidence_escalates_without_contacting_customer(session_factory, commerce, email, clock) -> None:
    await seed_tenant(session_factory, "t1")
    classifier = FakeClassifier({"intent": "return_request", "confidence": 40, "fields": {}})
    engine = build_engine(
        session_factory=session_factory,
        email=email,
        classifier=classifier,
        commerce=commerce,
        time_provider=clock,
    )

    result = await engine.manager.handle_message(make_message("Hello, I have a question about something"))

    assert result.outcome is Outcome.ESCALATED
    assert result.conversation.resolution_rule == "low_confidence"
    assert result.reason == "confidence 40 is below threshold 70"
    assert email.outbox == []
    assert len(classifier.calls) == 1


@pytest.mark.asyncio
async def test_order_platform_outage_stores_nothing(engine, session_factory, commerce, email) -> None:
    await seed_tenant(session_factory, "t1")
    commerce.add(make_order("HFB-12345"))
    commerce.lookup_down = True
    message = make_message("Please return order #HFB-12345", thread_id="thread-outage")

    with pytest.raises(CollaboratorUnavailableError):
        await engine.manager.handle_message(message)

    assert await engine.manager.get_conversation("t1", conversation_id_for("t1", "thread-outage")) is None
    assert email.outbox == []

    # Redelivery after recovery processes the message normally.
    commerce.lookup_down = False
    result = await engine.manager.handle_message(message)
    assert result.outcome is Outcome.APPROVED


@pytest.mark.asyncio
async def test_failed_info_request_is_redelivered(session_factory, commerce, clock) -> None:
    await seed_tenant(session_factory, "t1")
    email = FakeEmailSender(fail_times=1)
    engine = build_engine(
        session_factory=session_factory,
        email=email,
        classifier=FakeClassifier(),
        commerce=commerce,
        time_provider=clock,
    )
    message = make_message("I want to return my jacket", thread_id="thread-mailer")

    with pytest.raises(CollaboratorUnavailableError):
        await engine.manager.handle_message(message)
    assert await engine.manager.get_conversation("t1", conversation_id_for("t1", "thread-mailer")) is None

    result = await engine.manager.handle_message(message)
    assert result.outcome is Outcome.INFO_REQUESTED
    assert len(email.sent_with_tag(TAG_INFO_REQUEST)) == 1


@pytest.mark.asyncio
async def test_messages_after_resolution_are_ignored(engine, session_factory, commerce) -> None:
    await seed_tenant(session_factory, "t1")
    commerce.add(make_order("HFB-12345"))
    thread = "thread-done"
    await engine.manager.handle_message(make_message("Return order #HFB-12345 please", thread_id=thread))

    again = await engine.manager.handle_message(make_message("Thanks! Also return #HFB-12345", thread_id=thread))

    assert again.outcome is Outcome.IGNORED
    assert again.conversation.state == ConversationState.APPROVED.value
    assert len(commerce.refunds) == 1
    assert "conversation.message_ignored" in await _events(session_factory, again.conversation.id)


@pytest.mark.asyncio
async def test_refunded_order_is_denied_with_notice(engine, session_factory, commerce, email) -> None:
    await seed_tenant(session_factory, "t1")
    commerce.add(make_order("HFB-77777", status="refunded"))

    result = await engine.manager.handle_message(make_message("I want to return order #HFB-77777"))

    assert result.outcome is Outcome.DENIED
    assert result.conversation.resolution_rule == "order_status_terminal"
    assert len(email.sent_with_tag(TAG_DENIAL)) == 1
    assert commerce.refunds == []


@pytest.mark.asyncio
async def test_idle_conversations_are_swept(engine, session_factory, clock) -> None:
    await seed_tenant(session_factory, "t1")
    pending = await engine.manager.handle_message(make_message("I want to return my boots", thread_id="thread-idle"))
    assert pending.conversation.state == ConversationState.COLLECTING_INFO.value

    clock.advance(minutes=60)
    assert await engine.manager.sweep_stale() == 0

    clock.advance(days=2)
    stale = await engine.manager.find_stale(clock())
    assert [view.id for view in stale] == [pending.conversation.id]
    assert await engine.manager.sweep_stale() == 1

    swept = await engine.manager.get_conversation("t1", pending.conversation.id)
    assert swept is not None
    assert swept.state == ConversationState.ESCALATED.value
    assert swept.resolution_reason == REASON_UNRESPONSIVE
    assert swept.resolution_rule == "idle_timeout"
    assert swept.missing_fields == []
    assert await engine.manager.sweep_stale() == 0


@pytest.mark.asyncio
async def test_tenant_idle_timeout_can_extend_the_default(engine, session_factory, clock) -> None:
    await seed_tenant(session_factory, "t1")
    await seed_policy(session_factory, "t1", "return_request", idle_timeout_minutes=7 * 24 * 60)
    await engine.manager.handle_message(make_message("I want to return my boots", thread_id="thread-patient"))

    clock.advance(days=3)
    assert await engine.manager.sweep_stale() == 0

    clock.advance(days=5)
    assert await engine.manager.sweep_stale() == 1


@pytest.mark.asyncio
async def test_exhausted_quota_escalates_for_upgrade(engine, session_factory, commerce, email) -> None:
    await seed_tenant(session_factory, "t1", monthly_allotment=0)
    commerce.add(make_order("HFB-12345"))

    result = await engine.manager.handle_message(make_message("Return order #HFB-12345 please"))

    assert result.outcome is Outcome.QUOTA_EXHAUSTED
    assert result.reason == REASON_QUOTA_EXHAUSTED
    assert result.conversation.state == ConversationState.ESCALATED.value
    assert commerce.refunds == []
    assert email.sent_with_tag(TAG_APPROVAL) == []


@pytest.mark.asyncio
async def test_failed_refund_escalates_with_apology(engine, session_factory, commerce, email) -> None:
    await seed_tenant(session_factory, "t1")
    commerce.add(make_order("HFB-12345"))
    commerce.refund_declined = True

    result = await engine.manager.handle_message(make_message("Return order #HFB-12345 please"))

    assert result.outcome is Outcome.ACTION_FAILED
    assert result.conversation.state == ConversationState.ESCALATED.value
    assert result.conversation.action_status == ACTION_FAILED
    assert not result.conversation.action_retryable
    assert result.conversation.resolution_rule == "action_failed"
    assert len(email.sent_with_tag(TAG_ACTION_APOLOGY)) == 1
    assert email.sent_with_tag(TAG_APPROVAL) == []
    assert "action.failed" in await _events(session_factory, result.conversation.id)


@pytest.mark.asyncio
async def test_approval_without_auto_action_skips_mutation(engine, session_factory, commerce, email) -> None:
    await seed_tenant(session_factory, "t1")
    await seed_policy(
        session_factory,
        "t1",
        "return_request",
        enable_auto_action=False,
        return_instructions="Ship the item to 1 Market St.",
    )
    commerce.add(make_order("HFB-12345"))

    result = await engine.manager.handle_message(make_message("Return order #HFB-12345 please"))

    assert result.outcome is Outcome.APPROVED
    assert commerce.refunds == []
    approvals = email.sent_with_tag(TAG_APPROVAL)
    assert len(approvals) == 1
    assert "1 Market St." in approvals[0].body


@pytest.mark.asyncio
async def test_subscription_reference_is_inferred_from_customer(engine, session_factory, commerce, email) -> None:
    await seed_tenant(session_factory, "t1")
    commerce.add(make_order("88231", status="active", kind=KIND_SUBSCRIPTION))

    result = await engine.manager.handle_message(make_message("Please pause my subscription"))

    assert result.outcome is Outcome.APPROVED
    assert result.conversation.collected_fields[FIELD_SUBSCRIPTION_REFERENCE] == "88231"
    assert commerce.subscription_changes == [("88231", "on-hold")]
    approvals = email.sent_with_tag(TAG_APPROVAL)
    assert len(approvals) == 1
    assert "paused" in approvals[0].body


@pytest.mark.asyncio
async def test_terminal_notice_failure_keeps_resolution(session_factory, commerce, clock) -> None:
    await seed_tenant(session_factory, "t1")
    commerce.add(make_order("HFB-12345"))
    email = FakeEmailSender(fail_times=1)
    engine = build_engine(
        session_factory=session_factory,
        email=email,
        classifier=FakeClassifier(),
        commerce=commerce,
        time_provider=clock,
    )

    result = await engine.manager.handle_message(make_message("Return order #HFB-12345 please"))

    assert result.outcome is Outcome.APPROVED
    stored = await engine.manager.get_conversation("t1", result.conversation.id)
    assert stored is not None and stored.state == ConversationState.APPROVED.value
    assert email.outbox == []
    assert "notification.failed" in await _events(session_factory, result.conversation.id)




@pytest.mark.asyncio
async def test_outage_on_follow_up_message_keeps_collection_state(
    engine, session_factory, commerce, classifier, email
) -> None:
    await seed_tenant(session_factory, "t1")
    commerce.add(make_order("HFB-12345"))
    thread = "thread-flaky"
    first = await engine.manager.handle_message(make_message("I'd like to return my sweater please", thread_id=thread))
    assert first.conversation.missing_fields == [FIELD_ORDER_REFERENCE]

    classifier.fail = True
    with pytest.raises(CollaboratorUnavailableError):
        await engine.manager.handle_message(make_message("I think it was the blue one", thread_id=thread))

    commerce.lookup_down = True
    with pytest.raises(CollaboratorUnavailableError):
        await engine.manager.handle_message(make_message("Found it, order #HFB-12345", thread_id=thread))

    stored = await engine.manager.get_conversation("t1", first.conversation.id)
    assert stored is not None
    assert stored.state == ConversationState.COLLECTING_INFO.value
    assert stored.follow_up_count == 0
    assert stored.missing_fields == [FIELD_ORDER_REFERENCE]
    assert FIELD_ORDER_REFERENCE not in stored.collected_fields
    assert email.sent_with_tag(TAG_FOLLOW_UP) == []

    commerce.lookup_down = False
    recovered = await engine.manager.handle_message(make_message("Found it, order #HFB-12345", thread_id=thread))
    assert recovered.outcome is Outcome.APPROVED
    assert recovered.conversation.follow_up_count == 0


@pytest.mark.asyncio
async def test_promo_code_issue_refunds_the_promised_discount(engine, session_factory, commerce, email) -> None:
    await seed_tenant(session_factory, "t1")
    await seed_policy(
        session_factory,
        "t1",
        "promo_code_issue",
        refund_type=REFUND_PERCENTAGE,
        refund_value=Decimal("0.15"),
        refund_cap=Decimal("25.00"),
    )
    commerce.add(make_order("HFB-55555", total="83.30"))

    result = await engine.manager.handle_message(
        make_message("My promo code SPRING15 was not applied to order #HFB-55555")
    )

    assert result.outcome is Outcome.APPROVED
    assert result.conversation.intent_type == "promo_code_issue"
    assert result.conversation.resolution_rule == "promo_refund"
    assert result.reason == "eligible for a $12.50 promo refund"
    assert commerce.refunds == [("HFB-55555", Decimal("12.50"))]
    approvals = email.sent_with_tag(TAG_APPROVAL)
    assert len(approvals) == 1
    assert "#HFB-55555" in approvals[0].body
    assert "$12.50" in approvals[0].body


@pytest.mark.asyncio
async def test_interrupted_commit_never_refunds_twice(engine, session_factory, commerce, email, monkeypatch) -> None:
    await seed_tenant(session_factory, "t1")
    await seed_policy(
        session_factory,
        "t1",
        "promo_code_issue",
        refund_type=REFUND_PERCENTAGE,
        refund_value=Decimal("0.20"),
    )
    commerce.add(make_order("HFB-55555", total="100.00"))
    message = make_message("My promo code SAVE20 did not work on order #HFB-55555", thread_id="thread-lost-commit")

    record_event = conversations_module.record_event
    failures: list[str] = []

    async def record_event_losing_approval(**event):
        if event.get("event_type") == "conversation.approved" and not failures:
            failures.append(event["event_type"])
            raise OperationalError("INSERT INTO activity_log", {}, Exception("database is locked"))
        return await record_event(**event)

    monkeypatch.setattr(conversations_module, "record_event", record_event_losing_approval)

    with pytest.raises(OperationalError):
        await engine.manager.handle_message(message)

    conversation_id = conversation_id_for("t1", "thread-lost-commit")
    stored = await engine.manager.get_conversation("t1", conversation_id)
    assert stored is not None
    assert stored.state == ConversationState.EVALUATING.value
    assert stored.action_status == ACTION_PENDING
    assert commerce.refunds == [("HFB-55555", Decimal("20.00"))]

    redelivered = await engine.manager.handle_message(message)

    assert redelivered.outcome is Outcome.ESCALATED
    assert redelivered.reason == REASON_ACTION_INTERRUPTED
    assert redelivered.conversation.resolution_rule == "action_interrupted"
    assert redelivered.conversation.action_status == ACTION_FAILED
    assert redelivered.conversation.action_retryable
    assert commerce.refunds == [("HFB-55555", Decimal("20.00"))]
    assert email.sent_with_tag(TAG_APPROVAL) == []
    usage = await engine.quota.get_usage("t1", SERVICE_AUTOMATION)
    assert usage.day.used == 1
    assert "action.reserved" in await _events(session_factory, conversation_id)
