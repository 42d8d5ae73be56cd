from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.domain.models import ActivityLog


async def list_entries(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str | None = None,
    outcome: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ActivityLog]:
    # Scope all activity queries to a tenant to prevent cross-tenant leakage.
    stmt = select(ActivityLog).where(ActivityLog.tenant_id == tenant_id)
    if event_type:
        stmt = stmt.where(ActivityLog.event_type == event_type)
    if outcome:
        stmt = stmt.where(ActivityLog.outcome == outcome)
    if resource_id:
        stmt = stmt.where(ActivityLog.resource_id == resource_id)
    if occurred_from:
        stmt = stmt.where(ActivityLog.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(ActivityLog.occurred_at <= occurred_to)

    stmt = stmt.order_by(ActivityLog.occurred_at.desc(), ActivityLog.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
