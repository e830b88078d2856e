from __future__ import annotations

from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from doorpro.core.config import get_settings
from doorpro.core.errors import Forbidden, QuotaExceeded
from doorpro.domain.access import ACTION_METRICS, LimitedAction, MetricType, TenantContext
from doorpro.persistence.db import get_session
from doorpro.services.audit import AuditRecorder, get_audit_recorder
from doorpro.services.auth.capabilities import Capability, has_capability
from doorpro.services.auth.tokens import TokenManager, get_token_manager
from doorpro.services.tenancy import resolve_tenant
from doorpro.services.usage import UsageMeter, get_usage_meter


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_tokens() -> TokenManager:
    return get_token_manager()


def get_recorder() -> AuditRecorder:
    return get_audit_recorder()


def get_meter() -> UsageMeter:
    return get_usage_meter()


async def get_tenant_context(
    request: Request,
    tokens: TokenManager = Depends(get_tokens),
) -> TenantContext:
    tenant = await resolve_tenant(request, tokens)
    # Exposed to the response hook that audits and meters the request.
    request.state.tenant_context = tenant
    return tenant


def pending_usage(request: Request) -> list[MetricType]:
    # Creation units waiting for a successful response before they are recorded.
    return list(getattr(request.state, "usage_charges", ()))


def require_capability(capability: Capability) -> Callable[..., Awaitable[TenantContext]]:
    async def dependency(tenant: TenantContext = Depends(get_tenant_context)) -> TenantContext:
        if not has_capability(tenant.identity, capability):
            raise Forbidden("Insufficient permissions")
        return tenant

    return dependency


def require_quota(action: LimitedAction, *, record: bool = True) -> Callable[..., Awaitable[TenantContext]]:
    """Gate a handler on the tenant's tier limit for `action`.

    Nothing is counted here. Creation actions queue one unit on the request and
    the response hook records it only if the handler answered 2xx; API requests
    are metered by that hook for every authenticated call.
    """

    async def dependency(
        request: Request,
        tenant: TenantContext = Depends(get_tenant_context),
        meter: UsageMeter = Depends(get_meter),
    ) -> TenantContext:
        if action is LimitedAction.API_REQUEST and not get_settings().api_quota_enforced:
            return tenant
        decision = await meter.check_limit(tenant.identity_id, action)
        if not decision.allowed:
            raise QuotaExceeded(
                decision.reason or "Tier limit reached",
                current_usage=decision.current_usage,
                limit=decision.limit,
            )
        if record and action is not LimitedAction.API_REQUEST:
            request.state.usage_charges = [*pending_usage(request), ACTION_METRICS[action]]
        return tenant

    return dependency
