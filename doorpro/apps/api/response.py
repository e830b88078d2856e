from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


REQUEST_ID_HEADER = "X-Request-Id"


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


def get_request_id(request: Request) -> str:
    # Middleware stamps request.state; handlers reached before it fall back to the header.
    request_id = getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER)
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def error_body(
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the `{"error": ..., "meta": {"request_id": ...}}` payload every failure returns."""
    error = ErrorDetail(code=code, message=message, details=details)
    return {
        "error": error.model_dump(exclude_none=True),
        "meta": {"request_id": get_request_id(request)},
    }
