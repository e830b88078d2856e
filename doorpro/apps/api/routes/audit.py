from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from doorpro.apps.api.deps import get_db, get_tenant_context
from doorpro.core.errors import Forbidden
from doorpro.domain.access import AuditAction, TenantContext
from doorpro.domain.models import AuditLogEntry
from doorpro.services.audit import list_entries
from doorpro.services.auth.capabilities import Capability, has_capability


router = APIRouter(prefix="/audit", tags=["audit"])


class AuditEntryResponse(BaseModel):
    id: int
    identity_id: int | None
    action: str
    resource: str
    resource_id: str | None
    details: dict[str, Any] | None
    ip_address: str | None
    request_id: str | None
    timestamp: str


class AuditEntriesPage(BaseModel):
    items: list[AuditEntryResponse]
    next_offset: int | None


def _to_response(entry: AuditLogEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        identity_id=entry.identity_id,
        action=entry.action,
        resource=entry.resource,
        resource_id=entry.resource_id,
        details=entry.details,
        ip_address=entry.ip_address,
        request_id=entry.request_id,
        timestamp=entry.timestamp.isoformat(),
    )


@router.get("/logs")
async def list_audit_logs(
    identity_id: int | None = None,
    action: AuditAction | None = None,
    resource: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    tenant: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> AuditEntriesPage:
    # Tenants read their own trail; other identities need the audit-reader capability.
    scoped_identity_id = identity_id if identity_id is not None else tenant.identity_id
    if scoped_identity_id != tenant.identity_id and not has_capability(
        tenant.identity, Capability.READ_ANY_AUDIT_LOG
    ):
        raise Forbidden("Access denied to audit logs")

    try:
        entries = await list_entries(
            db,
            identity_id=scoped_identity_id,
            action=action.value if action else None,
            resource=resource,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit logs") from exc

    next_offset = None
    if len(entries) > limit:
        entries = entries[:limit]
        next_offset = offset + limit

    return AuditEntriesPage(items=[_to_response(entry) for entry in entries], next_offset=next_offset)
