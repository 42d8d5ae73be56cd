from __future__ import annotations

import pytest
from arq import Retry

from caseflow.core.errors import OrderLookupUnavailableError
from caseflow.services.queue import MessageJobPayload, job_id_for, process_message_job
from caseflow.tests.utils.factories import make_order, seed_tenant
from caseflow.workers.automation_worker import WorkerSettings, process_message, sweep_stale_conversations


class _DownManager:
    def __init__(self) -> None:
        self.calls = 0

    async def handle_message(self, message):
        self.calls += 1
        raise OrderLookupUnavailableError("order platform timed out")


def _payload(**overrides) -> MessageJobPayload:
    values = {
        "tenant_id": "t1",
        "thread_id": "thread-worker",
        "message_id": "m-1",
        "customer_email": "customer@example.com",
        "subject": "Return",
        "body": "Please return order #HFB-12345",
    }
    values.update(overrides)
    return MessageJobPayload(**values)


def test_job_id_is_stable_per_message() -> None:
    assert job_id_for(_payload()) == "message:t1:m-1"
    assert job_id_for(_payload(body="different body")) == "message:t1:m-1"


def test_payload_converts_to_inbound_message() -> None:
    message = _payload(attachments=["photo.jpg"]).to_message()
    assert message.attachments == ("photo.jpg",)
    assert message.thread_id == "thread-worker"


@pytest.mark.asyncio
async def test_collaborator_outage_is_retried_with_backoff() -> None:
    manager = _DownManager()
    with pytest.raises(Retry) as excinfo:
        await process_message_job(manager, _payload(), attempt=2, max_tries=3)
    assert excinfo.value.defer_score == 10_000


@pytest.mark.asyncio
async def test_last_attempt_is_abandoned() -> None:
    manager = _DownManager()
    assert await process_message_job(manager, _payload(), attempt=3, max_tries=3) is None
    assert manager.calls == 1


@pytest.mark.asyncio
async def test_worker_function_processes_message(engine, session_factory, commerce) -> None:
    await seed_tenant(session_factory, "t1")
    commerce.add(make_order("HFB-12345"))
    ctx = {"engine": engine, "job_try": 1}

    outcome = await process_message(ctx, _payload().model_dump(mode="json"))

    assert outcome == "approved"
    assert await sweep_stale_conversations(ctx) == 0


def test_worker_settings_register_jobs() -> None:
    assert WorkerSettings.functions == [process_message]
    assert len(WorkerSettings.cron_jobs) == 1
    assert WorkerSettings.max_tries >= 1
