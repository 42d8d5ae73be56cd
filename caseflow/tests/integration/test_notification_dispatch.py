from __future__ import annotations

from datetime import timedelta

import pytest

from caseflow.core.errors import NotificationDeliveryError
from caseflow.domain.models import NotificationDispatch
from caseflow.persistence.repos import notifications as dispatch_repo
from caseflow.providers.email.fake import FakeEmailSender
from caseflow.services.notifications import NotificationDispatcher, NotificationPayload
from caseflow.services.notifications.dispatcher import conversation_key, usage_key


def _payload(tag: str = "approval") -> NotificationPayload:
    return NotificationPayload(
        tenant_id="t1",
        recipient="customer@example.com",
        subject="Return request approved",
        body="Dear Customer,\n\nYour return request has been approved.",
        template_tag=tag,
    )


def test_key_formats(clock) -> None:
    assert conversation_key("c1", "info_request", 0) == "conversation:c1:info_request:0"
    assert conversation_key("c1", "approval") == "conversation:c1:approval"
    assert usage_key("t1", "automation", "cutoff", "day", clock()) == "usage:t1:automation:cutoff:day-2026-03-10"
    assert usage_key("t1", "automation", "warning", "month", clock()) == "usage:t1:automation:warning:month-2026-03"


@pytest.mark.asyncio
async def test_same_key_is_delivered_once(session_factory, clock) -> None:
    sender = FakeEmailSender()
    dispatcher = NotificationDispatcher(session_factory=session_factory, sender=sender, time_provider=clock)

    assert await dispatcher.send_once("conversation:c1:approval", _payload())
    assert not await dispatcher.send_once("conversation:c1:approval", _payload())
    assert len(sender.outbox) == 1
    assert await dispatcher.was_sent("conversation:c1:approval")
    assert not await dispatcher.was_sent("conversation:c1:denial")


@pytest.mark.asyncio
async def test_failed_delivery_is_not_marked_sent_and_can_retry(session_factory, clock) -> None:
    sender = FakeEmailSender(fail_times=1)
    dispatcher = NotificationDispatcher(session_factory=session_factory, sender=sender, time_provider=clock)

    with pytest.raises(NotificationDeliveryError):
        await dispatcher.send_once("conversation:c2:info_request:0", _payload("info_request"))
    assert not await dispatcher.was_sent("conversation:c2:info_request:0")

    assert await dispatcher.send_once("conversation:c2:info_request:0", _payload("info_request"))
    assert sender.attempts == 2
    assert len(sender.outbox) == 1

    async with session_factory() as session:
        row = await dispatch_repo.get_dispatch(session, "conversation:c2:info_request:0")
    assert row is not None
    assert row.status == dispatch_repo.STATUS_SENT
    assert row.attempts == 2


@pytest.mark.asyncio
async def test_abandoned_claim_is_reclaimed_after_ttl(session_factory, clock) -> None:
    async with session_factory() as session:
        session.add(
            NotificationDispatch(
                dispatch_key="conversation:c3:denial",
                tenant_id="t1",
                template_tag="denial",
                recipient="customer@example.com",
                status=dispatch_repo.STATUS_CLAIMED,
                attempts=1,
                claimed_at=clock() - timedelta(seconds=30),
            )
        )
        await session.commit()

    sender = FakeEmailSender()
    dispatcher = NotificationDispatcher(
        session_factory=session_factory, sender=sender, time_provider=clock, claim_ttl_s=60
    )
    # A fresh claim belongs to someone else.
    assert not await dispatcher.send_once("conversation:c3:denial", _payload("denial"))

    clock.advance(seconds=60)
    assert await dispatcher.send_once("conversation:c3:denial", _payload("denial"))
    assert len(sender.outbox) == 1
