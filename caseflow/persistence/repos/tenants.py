from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.domain.models import AutomationPolicy, Tenant


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_policy(session: AsyncSession, tenant_id: str, intent_type: str) -> AutomationPolicy | None:
    result = await session.execute(
        select(AutomationPolicy).where(
            AutomationPolicy.tenant_id == tenant_id,
            AutomationPolicy.intent_type == intent_type,
        )
    )
    return result.scalar_one_or_none()
