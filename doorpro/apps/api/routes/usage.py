from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from doorpro.apps.api.deps import get_meter, get_tenant_context
from doorpro.domain.access import LimitedAction, TenantContext
from doorpro.services.usage import UsageMeter


router = APIRouter(prefix="/usage", tags=["usage"])


class MetricUsageResponse(BaseModel):
    used: int
    # -1 means unlimited.
    limit: int
    remaining: int | None
    percentage: int


class UsageDashboardResponse(BaseModel):
    current_tier: str
    usage: dict[str, MetricUsageResponse]
    can_create_contact: bool
    can_create_territory: bool
    can_create_schedule: bool
    upgrade_available: bool


class LimitCheckResponse(BaseModel):
    action: str
    allowed: bool
    reason: str | None = None
    current_usage: int | None = None
    limit: int | None = None


@router.get("")
async def get_usage_dashboard(
    tenant: TenantContext = Depends(get_tenant_context),
    meter: UsageMeter = Depends(get_meter),
) -> UsageDashboardResponse:
    snapshot = await meter.get_usage(tenant.identity_id)
    return UsageDashboardResponse(
        current_tier=snapshot.tier,
        usage={
            name: MetricUsageResponse(
                used=metric.used,
                limit=metric.limit,
                remaining=metric.remaining,
                percentage=metric.percentage,
            )
            for name, metric in snapshot.metrics.items()
        },
        can_create_contact=snapshot.can_create_contact,
        can_create_territory=snapshot.can_create_territory,
        can_create_schedule=snapshot.can_create_schedule,
        upgrade_available=snapshot.upgrade_available,
    )


@router.get("/check/{action}")
async def check_usage_limit(
    action: LimitedAction,
    tenant: TenantContext = Depends(get_tenant_context),
    meter: UsageMeter = Depends(get_meter),
) -> LimitCheckResponse:
    # Read-only preview; nothing is recorded.
    decision = await meter.check_limit(tenant.identity_id, action)
    return LimitCheckResponse(
        action=action.value,
        allowed=decision.allowed,
        reason=decision.reason,
        current_usage=decision.current_usage,
        limit=decision.limit,
    )
