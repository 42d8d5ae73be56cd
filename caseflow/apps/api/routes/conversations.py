from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.apps.api.deps import get_db, get_tenant_id
from caseflow.apps.api.response import Page, SuccessEnvelope, paginate, success_response
from caseflow.apps.api.routes.messages import ConversationResponse, to_conversation_response
from caseflow.domain.state import ConversationState
from caseflow.persistence.repos import conversations as conversations_repo
from caseflow.services.conversations import ConversationView


router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("", response_model=SuccessEnvelope[Page[ConversationResponse]])
async def list_conversations(
    request: Request,
    state: ConversationState | None = None,
    idle_minutes: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # idle_minutes narrows the listing to conversations with no activity for that long.
    inactive_since = None
    if idle_minutes is not None:
        inactive_since = datetime.now(timezone.utc) - timedelta(minutes=idle_minutes)
    try:
        rows = await conversations_repo.list_conversations(
            db,
            tenant_id=tenant_id,
            state=state,
            inactive_since=inactive_since,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing conversations") from exc

    views = [to_conversation_response(ConversationView.from_model(row)) for row in rows]
    page = paginate(views, offset=offset, limit=limit)
    return success_response(request=request, data=page)


@router.get("/{conversation_id}", response_model=SuccessEnvelope[ConversationResponse])
async def get_conversation(
    request: Request,
    conversation_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await conversations_repo.get_conversation(db, conversation_id, tenant_id=tenant_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return success_response(request=request, data=to_conversation_response(ConversationView.from_model(row)))
