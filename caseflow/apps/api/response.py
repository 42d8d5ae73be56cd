from __future__ import annotations

from typing import Any, Generic, Sequence, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")
ItemT = TypeVar("ItemT")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorBody
    meta: ResponseMeta


class Page(BaseModel, Generic[ItemT]):
    items: list[ItemT]
    next_offset: int | None = None


def paginate(rows: Sequence[ItemT], *, offset: int, limit: int) -> Page[ItemT]:
    """Build a page from a query that fetched ``limit + 1`` rows; the extra row signals more."""
    has_more = len(rows) > limit
    return Page(items=list(rows[:limit]), next_offset=offset + limit if has_more else None)


def request_id_for(request: Request) -> str:
    # Stored on request.state so middleware, handlers and the response header agree.
    cached = getattr(request.state, "request_id", None)
    if cached:
        return cached
    request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
    return request.state.request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}/")


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=request_id_for(request)).model_dump()


def success_response(*, request: Request, data: Any) -> Any:
    # Unversioned probes (/health) answer with the bare payload.
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = ErrorBody(code=code, message=message, details=details)
    return {"error": body.model_dump(exclude_none=True), "meta": _meta(request)}
