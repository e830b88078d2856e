from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from doorpro.domain.models import AuditLogEntry


# Append-only: this module exposes insert and read paths, never update or delete.


async def insert_entry(session: AsyncSession, entry: AuditLogEntry) -> None:
    session.add(entry)
    await session.flush()


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
    stmt = select(AuditLogEntry)
    if identity_id is not None:
        stmt = stmt.where(AuditLogEntry.identity_id == identity_id)
    if action:
        stmt = stmt.where(AuditLogEntry.action == action)
    if resource:
        stmt = stmt.where(AuditLogEntry.resource == resource)
    if occurred_from:
        stmt = stmt.where(AuditLogEntry.timestamp >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditLogEntry.timestamp <= occurred_to)

    stmt = stmt.order_by(AuditLogEntry.timestamp.desc(), AuditLogEntry.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
