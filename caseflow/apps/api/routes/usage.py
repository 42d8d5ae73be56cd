from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from caseflow.apps.api.deps import engine_dependency, get_tenant_id, require_admin
from caseflow.apps.api.response import SuccessEnvelope, success_response
from caseflow.services.container import Engine
from caseflow.services.quota import QuotaSnapshot, UsageView


router = APIRouter(tags=["usage"])


class WindowResponse(BaseModel):
    limit: int | None
    used: int
    remaining: int | None
    window_start: str


class UsageResponse(BaseModel):
    tenant_id: str
    service: str
    unlimited: bool
    day: WindowResponse
    month: WindowResponse
    limit_exceeded: bool
    warning_sent: bool
    cutoff_sent: bool
    last_event_at: str | None


class UsageResetResponse(BaseModel):
    tenant_id: str
    service: str
    reset: bool


def _window(snapshot: QuotaSnapshot, window_start) -> WindowResponse:
    return WindowResponse(
        limit=snapshot.limit,
        used=snapshot.used,
        remaining=snapshot.remaining,
        window_start=window_start.isoformat(),
    )


def _to_response(view: UsageView) -> UsageResponse:
    return UsageResponse(
        tenant_id=view.tenant_id,
        service=view.service,
        unlimited=view.unlimited,
        day=_window(view.day, view.daily_window_start),
        month=_window(view.month, view.monthly_window_start),
        limit_exceeded=view.limit_exceeded,
        warning_sent=view.warning_sent,
        cutoff_sent=view.cutoff_sent,
        last_event_at=view.last_event_at.isoformat() if view.last_event_at else None,
    )


@router.get("/usage/{service}", response_model=SuccessEnvelope[UsageResponse])
async def get_usage(
    request: Request,
    service: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: Engine = Depends(engine_dependency),
) -> dict:
    view = await engine.quota.get_usage(tenant_id, service)
    return success_response(request=request, data=_to_response(view))


@router.post("/admin/usage/{tenant_id}/{service}/reset", response_model=SuccessEnvelope[UsageResetResponse])
async def reset_usage(
    request: Request,
    tenant_id: str,
    service: str,
    actor_id: str = Depends(require_admin),
    engine: Engine = Depends(engine_dependency),
) -> dict:
    reset = await engine.quota.reset_usage(tenant_id, service, actor_id=actor_id)
    if not reset:
        raise HTTPException(status_code=404, detail="No usage record for this tenant and service")
    return success_response(
        request=request,
        data=UsageResetResponse(tenant_id=tenant_id, service=service.lower(), reset=True),
    )
