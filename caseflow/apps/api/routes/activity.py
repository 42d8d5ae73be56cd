from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.apps.api.deps import get_db, get_tenant_id
from caseflow.apps.api.response import Page, SuccessEnvelope, paginate, success_response
from caseflow.domain.models import ActivityLog
from caseflow.persistence.repos import activity as activity_repo


router = APIRouter(prefix="/activity", tags=["activity"])


class ActivityEntryResponse(BaseModel):
    id: int
    occurred_at: str
    actor_type: str
    actor_id: str | None
    event_type: str
    outcome: str
    resource_type: str | None
    resource_id: str | None
    customer_email: str | None
    metadata_json: dict[str, Any] | None
    error_code: str | None


def _to_response(entry: ActivityLog) -> ActivityEntryResponse:
    return ActivityEntryResponse(
        id=entry.id,
        occurred_at=entry.occurred_at.isoformat(),
        actor_type=entry.actor_type,
        actor_id=entry.actor_id,
        event_type=entry.event_type,
        outcome=entry.outcome,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id,
        customer_email=entry.customer_email,
        metadata_json=entry.metadata_json,
        error_code=entry.error_code,
    )


@router.get("", response_model=SuccessEnvelope[Page[ActivityEntryResponse]])
async def list_activity(
    request: Request,
    event_type: str | None = None,
    outcome: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        entries = await activity_repo.list_entries(
            db,
            tenant_id=tenant_id,
            event_type=event_type,
            outcome=outcome,
            resource_id=resource_id,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching activity") from exc

    page = paginate([_to_response(entry) for entry in entries], offset=offset, limit=limit)
    return success_response(request=request, data=page)
