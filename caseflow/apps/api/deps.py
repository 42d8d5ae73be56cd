from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.core.config import get_settings
from caseflow.services.container import Engine, get_engine


def engine_dependency() -> Engine:
    # Overridden in tests with an engine built on fakes.
    return get_engine()


async def get_db(engine: Engine = Depends(engine_dependency)) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with engine.session_factory() as session:
        yield session


def get_tenant_id(
    tenant_id: str | None = Header(default=None, alias="X-Tenant-Id", max_length=128),
) -> str:
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "X-Tenant-Id header is required"},
        )
    return tenant_id


def require_admin(
    admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> str:
    """Return the admin actor id once the shared admin token checks out."""
    expected = get_settings().admin_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Admin routes are disabled"},
        )
    if not admin_token or not hmac.compare_digest(admin_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing or invalid admin token"},
        )
    return "admin"
