from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.domain.models import NotificationDispatch


STATUS_CLAIMED = "claimed"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"


async def get_dispatch(session: AsyncSession, dispatch_key: str) -> NotificationDispatch | None:
    result = await session.execute(
        select(NotificationDispatch).where(NotificationDispatch.dispatch_key == dispatch_key)
    )
    return result.scalar_one_or_none()


async def try_insert_claim(
    session: AsyncSession,
    *,
    dispatch_key: str,
    tenant_id: str,
    template_tag: str,
    recipient: str,
    now: datetime,
) -> bool:
    # The unique key makes the insert the claim; a conflict means someone else holds it.
    try:
        async with session.begin_nested():
            session.add(
                NotificationDispatch(
                    dispatch_key=dispatch_key,
                    tenant_id=tenant_id,
                    template_tag=template_tag,
                    recipient=recipient,
                    status=STATUS_CLAIMED,
                    attempts=1,
                    claimed_at=now,
                )
            )
        return True
    except IntegrityError:
        return False


async def try_reclaim(
    session: AsyncSession,
    *,
    dispatch_key: str,
    now: datetime,
    stale_before: datetime,
) -> bool:
    # Failed claims, and claims whose holder vanished, can be taken over exactly once.
    stmt = (
        update(NotificationDispatch)
        .where(
            NotificationDispatch.dispatch_key == dispatch_key,
            or_(
                NotificationDispatch.status == STATUS_FAILED,
                (NotificationDispatch.status == STATUS_CLAIMED)
                & (NotificationDispatch.claimed_at < stale_before),
            ),
        )
        .values(
            status=STATUS_CLAIMED,
            claimed_at=now,
            attempts=NotificationDispatch.attempts + 1,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def mark_sent(session: AsyncSession, *, dispatch_key: str, now: datetime) -> None:
    await session.execute(
        update(NotificationDispatch)
        .where(NotificationDispatch.dispatch_key == dispatch_key)
        .values(status=STATUS_SENT, sent_at=now, last_error=None)
        .execution_options(synchronize_session=False)
    )


async def mark_failed(session: AsyncSession, *, dispatch_key: str, error: str) -> None:
    await session.execute(
        update(NotificationDispatch)
        .where(NotificationDispatch.dispatch_key == dispatch_key)
        .values(status=STATUS_FAILED, last_error=error[:2000])
        .execution_options(synchronize_session=False)
    )
