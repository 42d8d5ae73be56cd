from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from caseflow.apps.api.response import error_response, is_versioned_request
from caseflow.core.errors import CaseflowError, QuotaExhaustedError


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _envelope(
    request: Request,
    status_code: int,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Routes raise HTTPException(detail="...") or detail={"code": ..., "message": ..., **details}.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code = _STATUS_CODES.get(exc.status_code, "UNKNOWN_ERROR")
    message = "Request failed"
    details = None
    if isinstance(exc.detail, str):
        message = exc.detail
    elif isinstance(exc.detail, dict):
        extra = dict(exc.detail)
        code = str(extra.pop("code", None) or code)
        message = str(extra.pop("message", None) or message)
        details = extra or None
    return _envelope(request, exc.status_code, code=code, message=message, details=details, headers=exc.headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request,
        422,
        code="REQUEST_VALIDATION_ERROR",
        message="Request body or parameters are invalid",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def caseflow_error_handler(request: Request, exc: CaseflowError) -> JSONResponse:
    details: dict[str, Any] = {}
    if exc.retryable:
        details["retryable"] = True
    if isinstance(exc, QuotaExhaustedError):
        details.update(service=exc.service, period=exc.period)
    if exc.http_status >= 500 and not exc.retryable:
        logger.error("request_failed path=%s code=%s", request.url.path, exc.code, exc_info=exc)
    else:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, exc.code, exc)
    return _envelope(request, exc.http_status, code=exc.code, message=str(exc), details=details or None)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # Stack traces stay in the log.
    logger.error("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, code="INTERNAL_ERROR", message="Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    # StarletteHTTPException also catches FastAPI's HTTPException subclass.
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(CaseflowError, caseflow_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
