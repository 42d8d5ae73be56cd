from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request

from caseflow.apps.api.errors import register_error_handlers
from caseflow.apps.api.response import API_VERSION, REQUEST_ID_HEADER, request_id_for
from caseflow.apps.api.routes.activity import router as activity_router
from caseflow.apps.api.routes.conversations import router as conversations_router
from caseflow.apps.api.routes.health import router as health_router
from caseflow.apps.api.routes.messages import router as messages_router
from caseflow.apps.api.routes.usage import router as usage_router
from caseflow.core.config import get_settings
from caseflow.core.logging import configure_logging
from caseflow.persistence.db import dispose_engine
from caseflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_V1_ROUTERS = (health_router, messages_router, conversations_router, usage_router, activity_router)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    await dispose_engine()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=settings.app_name, version=API_VERSION, lifespan=_lifespan)

    @app.middleware("http")
    async def request_context(request: Request, call_next):  # type: ignore[no-untyped-def]
        request_id = request_id_for(request)
        started = time.monotonic()
        response = await call_next(request)
        elapsed_ms = (time.monotonic() - started) * 1000.0
        increment_counter(f"http_requests_total.{response.status_code}")
        logger.debug(
            "http_request method=%s path=%s status=%s elapsed_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    register_error_handlers(app)

    # Probes answer unversioned; everything else lives under /v1.
    app.include_router(health_router)
    for router in _V1_ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
