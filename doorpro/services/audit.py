from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.requests import Request

from doorpro.domain.access import AuditAction
from doorpro.domain.models import AuditLogEntry
from doorpro.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["password", "token", "secret", "authorization", "api_key", "cookie"]
_REDACTED_VALUE = "[REDACTED]"

_METHOD_ACTIONS = {
    "GET": AuditAction.READ,
    "POST": AuditAction.CREATE,
    "PUT": AuditAction.UPDATE,
    "PATCH": AuditAction.UPDATE,
    "DELETE": AuditAction.DELETE,
}


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_details(value: Any) -> Any:
    # Recursively scrub credential-bearing keys while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_details(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_details(item) for item in value]
    return value


def action_for_method(method: str) -> AuditAction:
    return _METHOD_ACTIONS.get(method.upper(), AuditAction.READ)


def resource_from_path(path: str, prefix: str = "/api") -> str:
    # "/api/contacts/12" -> "contacts"; anything outside the prefix is "unknown".
    normalized_prefix = "/" + prefix.strip("/") if prefix.strip("/") else ""
    if normalized_prefix and not (path == normalized_prefix or path.startswith(normalized_prefix + "/")):
        return "unknown"
    remainder = path[len(normalized_prefix):].strip("/")
    if not remainder:
        return "unknown"
    return remainder.split("/", 1)[0]


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Client hints for audit rows; credentials are never copied from headers.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuditRecorder:
    """Append-only audit trail whose failures never reach the audited action."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        if session_factory is None:
            from doorpro.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._time_provider = time_provider or _utc_now
        self._pending: set[asyncio.Task[None]] = set()

    def record(
        self,
        identity_id: int | None,
        action: AuditAction | str,
        resource: str,
        resource_id: str | int | None = None,
        details: dict[str, Any] | None = None,
        ip: str | None = None,
        request_id: str | None = None,
    ) -> None:
        # Capture the timestamp now; the write itself happens off the request path.
        occurred_at = self._time_provider()
        try:
            task = asyncio.get_running_loop().create_task(
                self.write(
                    identity_id,
                    action,
                    resource,
                    resource_id=resource_id,
                    details=details,
                    ip=ip,
                    request_id=request_id,
                    occurred_at=occurred_at,
                )
            )
        except RuntimeError:
            logger.warning("audit_record_dropped action=%s reason=no_event_loop", action)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def write(
        self,
        identity_id: int | None,
        action: AuditAction | str,
        resource: str,
        resource_id: str | int | None = None,
        details: dict[str, Any] | None = None,
        ip: str | None = None,
        request_id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> bool:
        action_value = action.value if isinstance(action, AuditAction) else str(action)
        entry = AuditLogEntry(
            identity_id=identity_id,
            action=action_value,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=sanitize_details(details or {}),
            ip_address=ip,
            request_id=request_id,
            timestamp=occurred_at or self._time_provider(),
        )
        try:
            async with self._session_factory() as session:
                await audit_repo.insert_entry(session, entry)
                await session.commit()
        except Exception as exc:  # noqa: BLE001 - audit failures are non-fatal
            logger.warning(
                "audit_write_failed action=%s resource=%s request_id=%s",
                action_value,
                resource,
                request_id,
                exc_info=exc,
            )
            return False
        return True

    async def drain(self) -> None:
        # Await in-flight writes; used on shutdown and by tests.
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


async def list_entries(
    session: AsyncSession,
    *,
    identity_id: int | None = None,
    action: str | None = None,
    resource: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditLogEntry]:
    return await audit_repo.list_entries(
        session,
        identity_id=identity_id,
        action=action,
        resource=resource,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        offset=max(0, offset),
        limit=max(1, limit),
    )


_audit_recorder: AuditRecorder | None = None


def get_audit_recorder() -> AuditRecorder:
    global _audit_recorder
    if _audit_recorder is None:
        _audit_recorder = AuditRecorder()
    return _audit_recorder


def reset_audit_recorder() -> None:
    global _audit_recorder
    _audit_recorder = None
