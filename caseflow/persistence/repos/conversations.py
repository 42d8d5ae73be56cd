from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.domain.models import Conversation
from caseflow.domain.state import ConversationState


async def get_conversation(
    session: AsyncSession,
    conversation_id: str,
    *,
    tenant_id: str | None = None,
    for_update: bool = False,
) -> Conversation | None:
    stmt = select(Conversation).where(Conversation.id == conversation_id)
    if tenant_id is not None:
        stmt = stmt.where(Conversation.tenant_id == tenant_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_conversations(
    session: AsyncSession,
    *,
    tenant_id: str,
    state: ConversationState | None = None,
    inactive_since: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Conversation]:
    stmt = select(Conversation).where(Conversation.tenant_id == tenant_id)
    if state is not None:
        stmt = stmt.where(Conversation.state == state.value)
    if inactive_since is not None:
        stmt = stmt.where(Conversation.last_activity_at < inactive_since)
    stmt = stmt.order_by(Conversation.last_activity_at.desc(), Conversation.id)
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def find_stale(
    session: AsyncSession,
    *,
    older_than: datetime,
    tenant_id: str | None = None,
    limit: int = 200,
) -> list[Conversation]:
    # Oldest first so a bounded sweep always makes progress on the backlog.
    stmt = select(Conversation).where(
        Conversation.state == ConversationState.COLLECTING_INFO.value,
        Conversation.last_activity_at < older_than,
    )
    if tenant_id is not None:
        stmt = stmt.where(Conversation.tenant_id == tenant_id)
    stmt = stmt.order_by(Conversation.last_activity_at.asc(), Conversation.id).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
