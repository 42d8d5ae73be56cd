from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseflow.core.config import get_settings
from caseflow.core.errors import CollaboratorUnavailableError, NotificationDeliveryError
from caseflow.persistence.repos import notifications as dispatch_repo
from caseflow.providers.email.base import EmailSender, OutboundEmail
from caseflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationPayload:
    tenant_id: str
    recipient: str
    subject: str
    body: str
    template_tag: str


def conversation_key(conversation_id: str, event: str, attempt: int | None = None) -> str:
    # conversation:<id>:<event>[:<attempt>]
    if attempt is None:
        return f"conversation:{conversation_id}:{event}"
    return f"conversation:{conversation_id}:{event}:{attempt}"


def usage_key(tenant_id: str, service: str, notice: str, period: str, window_start: datetime) -> str:
    # usage:<tenant>:<service>:<notice>:<window>; the window token is day-YYYY-MM-DD or month-YYYY-MM.
    token = window_start.strftime("%Y-%m") if period == "month" else window_start.strftime("%Y-%m-%d")
    return f"usage:{tenant_id}:{service}:{notice}:{period}-{token}"


class NotificationDispatcher:
    """Delivers each logical notification at most once per idempotency key.

    A key is claimed by inserting its row before the transport is called. A sent
    row makes later calls no-ops that return False. A transport failure marks the
    row failed and re-raises, so a retry of the same key can reclaim and resend.
    A claim whose holder died is reclaimable after ``claim_ttl_s``.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        sender: EmailSender,
        time_provider: Callable[[], datetime] | None = None,
        claim_ttl_s: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._sender = sender
        self._time_provider = time_provider or _utc_now
        self._claim_ttl_s = claim_ttl_s if claim_ttl_s is not None else get_settings().notify_claim_ttl_s

    @property
    def sender(self) -> EmailSender:
        return self._sender

    async def send_once(self, key: str, payload: NotificationPayload) -> bool:
        now = self._time_provider()
        async with self._session_factory() as session:
            async with session.begin():
                claimed = await dispatch_repo.try_insert_claim(
                    session,
                    dispatch_key=key,
                    tenant_id=payload.tenant_id,
                    template_tag=payload.template_tag,
                    recipient=payload.recipient,
                    now=now,
                )
                if not claimed:
                    claimed = await dispatch_repo.try_reclaim(
                        session,
                        dispatch_key=key,
                        now=now,
                        stale_before=now - timedelta(seconds=self._claim_ttl_s),
                    )
            if not claimed:
                increment_counter("notifications_deduplicated_total")
                logger.info("notification_duplicate_skipped key=%s tag=%s", key, payload.template_tag)
                return False

            try:
                await self._sender.send(
                    OutboundEmail(
                        tenant_id=payload.tenant_id,
                        to=payload.recipient,
                        subject=payload.subject,
                        body=payload.body,
                        template_tag=payload.template_tag,
                    )
                )
            except Exception as exc:  # noqa: BLE001 - every transport failure must release the key
                async with session.begin():
                    await dispatch_repo.mark_failed(session, dispatch_key=key, error=str(exc) or type(exc).__name__)
                increment_counter("notifications_failed_total")
                logger.warning("notification_delivery_failed key=%s tag=%s", key, payload.template_tag, exc_info=exc)
                if isinstance(exc, NotificationDeliveryError):
                    raise
                if isinstance(exc, CollaboratorUnavailableError):
                    raise NotificationDeliveryError(str(exc)) from exc
                raise

            async with session.begin():
                await dispatch_repo.mark_sent(session, dispatch_key=key, now=self._time_provider())
        increment_counter("notifications_sent_total")
        logger.info("notification_sent key=%s tag=%s", key, payload.template_tag)
        return True

    async def was_sent(self, key: str) -> bool:
        async with self._session_factory() as session:
            row = await dispatch_repo.get_dispatch(session, key)
            return row is not None and row.status == dispatch_repo.STATUS_SENT


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
