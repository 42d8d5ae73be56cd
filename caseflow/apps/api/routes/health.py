from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.apps.api.deps import get_db
from caseflow.apps.api.response import SuccessEnvelope, success_response
from caseflow.services.telemetry import external_call_summary


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    database: str
    integrations: dict[str, dict[str, float | int | None]]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get("/ready", response_model=SuccessEnvelope[ReadinessResponse] | ReadinessResponse)
async def ready(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Workers and the API cannot make progress without the conversation store.
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("readiness_database_unavailable", exc_info=exc)
        raise HTTPException(
            status_code=503,
            detail={"code": "DATABASE_UNAVAILABLE", "message": "Database is unreachable"},
        ) from exc
    readiness = ReadinessResponse(status="ok", database="ok", integrations=external_call_summary())
    return success_response(request=request, data=readiness)
