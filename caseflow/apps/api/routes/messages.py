from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from caseflow.apps.api.deps import engine_dependency, get_tenant_id
from caseflow.apps.api.response import SuccessEnvelope, success_response
from caseflow.services.container import Engine
from caseflow.services.conversations import ConversationView
from caseflow.services.queue import MessageJobPayload, enqueue_message


router = APIRouter(prefix="/messages", tags=["messages"])


class InboundMessageRequest(BaseModel):
    thread_id: str = Field(min_length=1, max_length=255)
    message_id: str = Field(min_length=1, max_length=255)
    customer_email: str = Field(min_length=3, max_length=320)
    subject: str = Field(default="", max_length=998)
    body: str = Field(default="", max_length=100_000)
    attachments: list[str] = Field(default_factory=list)
    received_at: datetime | None = None


class ConversationResponse(BaseModel):
    id: str
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
    resolved_at: str | None
    created_at: str
    last_activity_at: str


class MessageOutcomeResponse(BaseModel):
    outcome: str
    reason: str | None
    conversation: ConversationResponse


class EnqueuedResponse(BaseModel):
    job_id: str
    status: str = "queued"


def to_conversation_response(view: ConversationView) -> ConversationResponse:
    return ConversationResponse(
        id=view.id,
        thread_id=view.thread_id,
        customer_email=view.customer_email,
        intent_type=view.intent_type,
        intent_confidence=view.intent_confidence,
        state=view.state,
        missing_fields=view.missing_fields,
        collected_fields=view.collected_fields,
        follow_up_count=view.follow_up_count,
        max_follow_ups=view.max_follow_ups,
        order_snapshot=view.order_snapshot,
        action_status=view.action_status,
        action_retryable=view.action_retryable,
        action_external_id=view.action_external_id,
        resolution_reason=view.resolution_reason,
        resolution_rule=view.resolution_rule,
        resolved_at=view.resolved_at.isoformat() if view.resolved_at else None,
        created_at=view.created_at.isoformat(),
        last_activity_at=view.last_activity_at.isoformat(),
    )


def _job_payload(tenant_id: str, body: InboundMessageRequest) -> MessageJobPayload:
    return MessageJobPayload(tenant_id=tenant_id, **body.model_dump())


@router.post("", response_model=SuccessEnvelope[MessageOutcomeResponse])
async def process_message(
    request: Request,
    body: InboundMessageRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(engine_dependency),
) -> dict:
    # Collaborator outages surface as 503 COLLABORATOR_UNAVAILABLE; nothing is stored.
    result = await engine.manager.handle_message(_job_payload(tenant_id, body).to_message())
    payload = MessageOutcomeResponse(
        outcome=result.outcome.value,
        reason=result.reason,
        conversation=to_conversation_response(result.conversation),
    )
    return success_response(request=request, data=payload)


@router.post(":enqueue", status_code=202, response_model=SuccessEnvelope[EnqueuedResponse])
async def enqueue(
    request: Request,
    body: InboundMessageRequest,
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    job_id = await enqueue_message(_job_payload(tenant_id, body))
    return success_response(request=request, data=EnqueuedResponse(job_id=job_id))
