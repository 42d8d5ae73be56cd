from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseflow.core.config import get_settings
from caseflow.core.errors import ActionExecutionError, CollaboratorUnavailableError
from caseflow.domain.types import ActionResult, ActionType, PlannedAction
from caseflow.providers.commerce.base import RefundExecutor, SubscriptionExecutor
from caseflow.services.audit import ACTOR_AI, record_event
from caseflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class ActionExecutor:
    """The only caller of third-party mutation APIs.

    Each action gets one attempt bounded by a timeout. Timeouts and transport
    errors come back as retryable failures since the mutation may or may not
    have landed; a collaborator-reported failure is not retryable. Nothing here
    retries on its own.
    """

    def __init__(
        self,
        *,
        refunds: RefundExecutor,
        subscriptions: SubscriptionExecutor,
        session_factory: async_sessionmaker[AsyncSession],
        timeout_ms: int | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._refunds = refunds
        self._subscriptions = subscriptions
        self._session_factory = session_factory
        self._timeout_ms = timeout_ms if timeout_ms is not None else get_settings().action_timeout_ms
        self._time_provider = time_provider or (lambda: datetime.now(timezone.utc))

    async def execute(
        self,
        *,
        tenant_id: str,
        action: PlannedAction,
        conversation_id: str | None = None,
        customer_email: str | None = None,
    ) -> ActionResult:
        try:
            result = await asyncio.wait_for(
                self._dispatch(tenant_id, action),
                timeout=self._timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            result = ActionResult(success=False, retryable=True, error="action timed out")
        except (httpx.HTTPError, OSError, CollaboratorUnavailableError) as exc:
            result = ActionResult(success=False, retryable=True, error=str(exc) or type(exc).__name__)
        except ActionExecutionError as exc:
            result = ActionResult(success=False, retryable=exc.retryable, error=str(exc))

        if result.success:
            increment_counter(f"actions_succeeded_total.{action.action_type.value}")
            logger.info(
                "action_executed tenant_id=%s action=%s target=%s external_id=%s",
                tenant_id,
                action.action_type.value,
                action.target,
                result.external_id,
            )
        else:
            increment_counter(f"actions_failed_total.{action.action_type.value}")
            logger.warning(
                "action_failed tenant_id=%s action=%s target=%s retryable=%s error=%s",
                tenant_id,
                action.action_type.value,
                action.target,
                result.retryable,
                result.error,
            )

        await record_event(
            session_factory=self._session_factory,
            occurred_at=self._time_provider(),
            tenant_id=tenant_id,
            actor_type=ACTOR_AI,
            actor_id="action_executor",
            event_type="action.executed" if result.success else "action.failed",
            outcome="success" if result.success else "failure",
            resource_type="conversation",
            resource_id=conversation_id,
            customer_email=customer_email,
            metadata={
                "action_type": action.action_type.value,
                "target": action.target,
                "requested_amount": str(action.amount) if action.amount is not None else None,
                "amount": str(result.amount) if result.amount is not None else None,
                "external_id": result.external_id,
                "retryable": result.retryable,
                "error": result.error,
            },
            error_code=None if result.success else "ACTION_FAILED",
        )
        return result

    async def _dispatch(self, tenant_id: str, action: PlannedAction) -> ActionResult:
        if action.action_type is ActionType.REFUND:
            receipt = await self._refunds.refund(tenant_id, action.target, action.amount)
            return ActionResult(
                success=receipt.success,
                external_id=receipt.refund_id,
                amount=receipt.amount,
                error=receipt.error,
            )
        if action.action_type is ActionType.PAUSE_SUBSCRIPTION:
            ok = await self._subscriptions.pause(tenant_id, action.target)
        elif action.action_type is ActionType.RESUME_SUBSCRIPTION:
            ok = await self._subscriptions.resume(tenant_id, action.target)
        elif action.action_type is ActionType.CANCEL_SUBSCRIPTION:
            ok = await self._subscriptions.cancel(tenant_id, action.target)
        else:
            raise ActionExecutionError(f"unsupported action {action.action_type}")
        return ActionResult(
            success=ok,
            external_id=action.target if ok else None,
            error=None if ok else "subscription update rejected by platform",
        )
