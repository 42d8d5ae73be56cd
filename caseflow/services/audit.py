from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseflow.domain.models import ActivityLog


logger = logging.getLogger(__name__)

ACTOR_AI = "ai"
ACTOR_SYSTEM = "system"
ACTOR_HUMAN = "human"

# Credentials never reach the activity log; long free text is clipped to keep rows small.
_CREDENTIAL_FRAGMENTS = ("api_key", "authorization", "token", "secret", "password", "consumer_key")
_MAX_TEXT_CHARS = 4000


def sanitize_metadata(value: Any, *, key: str | None = None) -> Any:
    if key is not None and any(fragment in key.lower() for fragment in _CREDENTIAL_FRAGMENTS):
        return "[REDACTED]"
    if isinstance(value, dict):
        return {str(k): sanitize_metadata(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, str) and len(value) > _MAX_TEXT_CHARS:
        return value[:_MAX_TEXT_CHARS] + "..."
    return value


def build_entry(
    *,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    event_type: str,
    outcome: str,
    actor_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    customer_email: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
) -> ActivityLog:
    return ActivityLog(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        customer_email=customer_email,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )


async def record_event(
    *,
    session: AsyncSession | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
    **fields: Any,
) -> None:
    """Append one activity-log row.

    With ``session`` the row joins the caller's transaction (committed only when
    ``commit`` is true). Without it the row is written in its own session from
    ``session_factory``. Write failures are logged; with ``best_effort=False``
    they are logged at ERROR and re-raised.
    """
    entry = build_entry(**fields)
    event_type = fields.get("event_type")

    if session is None:
        if session_factory is None:
            from caseflow.persistence.db import get_sessionmaker

            session_factory = get_sessionmaker()
        async with session_factory() as audit_session:
            try:
                audit_session.add(entry)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                _log_failure(event_type, fields.get("resource_id"), exc, best_effort)
                if not best_effort:
                    raise
        return

    try:
        session.add(entry)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        _log_failure(event_type, fields.get("resource_id"), exc, best_effort)
        if not best_effort:
            raise


def _log_failure(event_type: Any, resource_id: Any, exc: Exception, best_effort: bool) -> None:
    level = logger.warning if best_effort else logger.error
    level(
        "activity_log_write_failed event_type=%s resource_id=%s",
        event_type,
        resource_id,
        exc_info=exc,
    )
