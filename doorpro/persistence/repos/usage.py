from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from doorpro.domain.models import UsageMetric


async def get_metric(
    session: AsyncSession,
    *,
    identity_id: int,
    metric_type: str,
    period_start: datetime,
    period_end: datetime,
    for_update: bool = False,
) -> UsageMetric | None:
    stmt = select(UsageMetric).where(
        UsageMetric.identity_id == identity_id,
        UsageMetric.metric_type == metric_type,
        UsageMetric.period_start == period_start,
        UsageMetric.period_end == period_end,
    )
    if for_update:
        # Serialize concurrent increments of the same period row.
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_metric_value(
    session: AsyncSession,
    *,
    identity_id: int,
    metric_type: str,
    period_start: datetime,
    period_end: datetime,
) -> int:
    metric = await get_metric(
        session,
        identity_id=identity_id,
        metric_type=metric_type,
        period_start=period_start,
        period_end=period_end,
    )
    return int(metric.metric_value) if metric else 0


async def add_to_metric(session: AsyncSession, *, metric_id: int, delta: int) -> None:
    # Increment in SQL so concurrent writers never overwrite each other's deltas.
    await session.execute(
        update(UsageMetric)
        .where(UsageMetric.id == metric_id)
        .values(metric_value=UsageMetric.metric_value + delta)
    )


async def insert_metric(
    session: AsyncSession,
    *,
    identity_id: int,
    metric_type: str,
    period_start: datetime,
    period_end: datetime,
    value: int,
    created_at: datetime,
) -> UsageMetric:
    metric = UsageMetric(
        identity_id=identity_id,
        metric_type=metric_type,
        metric_value=value,
        period_start=period_start,
        period_end=period_end,
        created_at=created_at,
    )
    session.add(metric)
    await session.flush()
    return metric


async def list_metrics(session: AsyncSession, *, identity_id: int) -> list[UsageMetric]:
    result = await session.execute(
        select(UsageMetric)
        .where(UsageMetric.identity_id == identity_id)
        .order_by(UsageMetric.metric_type.asc(), UsageMetric.period_start.desc())
    )
    return list(result.scalars().all())
