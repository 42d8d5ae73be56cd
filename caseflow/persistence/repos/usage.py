from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.core.errors import CaseflowError
from caseflow.domain.models import UsageRecord


async def get_record(
    session: AsyncSession,
    tenant_id: str,
    service: str,
    *,
    for_update: bool = False,
) -> UsageRecord | None:
    stmt = select(UsageRecord).where(UsageRecord.tenant_id == tenant_id, UsageRecord.service == service)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_or_create_record(
    session: AsyncSession,
    tenant_id: str,
    service: str,
    *,
    day_start: datetime,
    month_start: datetime,
) -> UsageRecord:
    # Lock the row for the rest of the transaction; create it lazily on first use.
    record = await get_record(session, tenant_id, service, for_update=True)
    if record is not None:
        return record
    try:
        async with session.begin_nested():
            session.add(
                UsageRecord(
                    tenant_id=tenant_id,
                    service=service,
                    daily_count=0,
                    monthly_count=0,
                    daily_window_start=day_start,
                    monthly_window_start=month_start,
                )
            )
    except IntegrityError:
        # Another writer created the row first; fall through and lock theirs.
        pass
    record = await get_record(session, tenant_id, service, for_update=True)
    if record is None:
        raise CaseflowError(f"usage record insert failed for {tenant_id}/{service}")
    return record


async def compare_and_increment(
    session: AsyncSession,
    record: UsageRecord,
    *,
    daily_limit: int | None,
    monthly_limit: int | None,
    now: datetime,
) -> bool:
    """Increment both counters only while each is still below its limit.

    Returns False when the guarded update matched no row, meaning another writer
    consumed the last unit first.
    """
    stmt = update(UsageRecord).where(UsageRecord.id == record.id)
    if daily_limit is not None:
        stmt = stmt.where(UsageRecord.daily_count < daily_limit)
    if monthly_limit is not None:
        stmt = stmt.where(UsageRecord.monthly_count < monthly_limit)
    stmt = stmt.values(
        daily_count=UsageRecord.daily_count + 1,
        monthly_count=UsageRecord.monthly_count + 1,
        last_event_at=now,
    ).execution_options(synchronize_session=False)
    result = await session.execute(stmt)
    await session.refresh(record)
    return result.rowcount == 1
