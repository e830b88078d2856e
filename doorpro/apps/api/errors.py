from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from doorpro.apps.api.response import error_body
from doorpro.core.errors import (
    Forbidden,
    IdentityNotFound,
    InvalidCredentials,
    QuotaExceeded,
    StorageError,
    TokenInvalid,
    Unauthorized,
)


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# 401s advertise the bearer scheme alongside the session cookie.
_CHALLENGE = {"WWW-Authenticate": "Bearer"}


def _reply(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        content=error_body(request, code, message, details),
        status_code=status_code,
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Routes may raise HTTPException(detail={"code": ..., "message": ...}) for bespoke codes.
    detail = exc.detail
    code = _STATUS_CODES.get(exc.status_code, "HTTP_ERROR")
    message = "Request failed"
    extra: dict[str, Any] | None = None
    if isinstance(detail, dict):
        code = str(detail.get("code") or code)
        message = str(detail.get("message") or message)
        extra = {k: v for k, v in detail.items() if k not in ("code", "message")} or None
    elif isinstance(detail, str):
        message = detail
    return _reply(request, exc.status_code, code, message, extra, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Rejected inputs can be passwords or tokens; report locations and reasons only.
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return _reply(request, 422, "REQUEST_VALIDATION_ERROR", "Validation error", {"errors": errors})


async def invalid_credentials_handler(request: Request, exc: InvalidCredentials) -> JSONResponse:
    return _reply(request, 401, "AUTH_INVALID_CREDENTIALS", "Invalid credentials", headers=_CHALLENGE)


async def unauthorized_handler(request: Request, exc: Unauthorized) -> JSONResponse:
    return _reply(request, 401, "AUTH_UNAUTHORIZED", exc.message, headers=_CHALLENGE)


async def token_invalid_handler(request: Request, exc: TokenInvalid) -> JSONResponse:
    # The redemption message stays in the logs; clients learn nothing about why it failed.
    logger.info("token_rejected path=%s reason=%s", request.url.path, exc)
    return _reply(request, 401, "AUTH_TOKEN_INVALID", "Invalid or expired token", headers=_CHALLENGE)


async def forbidden_handler(request: Request, exc: Forbidden) -> JSONResponse:
    return _reply(request, 403, "AUTH_FORBIDDEN", exc.reason)


async def quota_exceeded_handler(request: Request, exc: QuotaExceeded) -> JSONResponse:
    usage = {"current_usage": exc.current_usage, "limit": exc.limit, "upgrade_required": True}
    body = error_body(request, "TIER_LIMIT_REACHED", exc.reason, usage)
    # Upgrade prompts read the flat fields; the envelope carries the same values.
    body.update(usage, message=exc.reason, reason=exc.reason)
    return JSONResponse(content=body, status_code=403)


async def identity_not_found_handler(request: Request, exc: IdentityNotFound) -> JSONResponse:
    return _reply(request, 404, "NOT_FOUND", "Identity not found")


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("storage_unavailable path=%s", request.url.path, exc_info=exc)
    return _reply(request, 503, "SERVICE_UNAVAILABLE", "Storage temporarily unavailable")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _reply(request, 500, "INTERNAL_ERROR", "Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    # FastAPI's HTTPException subclasses Starlette's, so one registration covers both.
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(InvalidCredentials, invalid_credentials_handler)
    app.add_exception_handler(Unauthorized, unauthorized_handler)
    app.add_exception_handler(TokenInvalid, token_invalid_handler)
    app.add_exception_handler(Forbidden, forbidden_handler)
    app.add_exception_handler(QuotaExceeded, quota_exceeded_handler)
    app.add_exception_handler(IdentityNotFound, identity_not_found_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
