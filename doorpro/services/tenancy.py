from __future__ import annotations

import logging

from starlette.requests import Request

from doorpro.core.errors import Forbidden, Unauthorized
from doorpro.domain.access import BEARER_KINDS, TenantContext, TokenKind
from doorpro.services.auth.capabilities import Capability, has_capability
from doorpro.services.auth.tokens import TokenManager


logger = logging.getLogger(__name__)

SESSION_TOKEN_KEY = "session_token"


def parse_bearer_token(header_value: str | None) -> str | None:
    # Exactly "Bearer <token>"; anything else is treated as no credential.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def session_token_from(request: Request) -> str | None:
    # request.session only exists when SessionMiddleware is installed.
    if "session" not in request.scope:
        return None
    token = request.session.get(SESSION_TOKEN_KEY)
    return token if isinstance(token, str) and token else None


async def resolve_tenant(request: Request, manager: TokenManager) -> TenantContext:
    """Resolve the caller's tenant, trying the session cookie before the bearer header.

    A stale session cookie does not block a valid bearer token; it is dropped so
    the next response clears it.
    """
    session_token = session_token_from(request)
    if session_token:
        identity = await manager.verify(session_token, expected_type=TokenKind.SESSION)
        if identity is not None:
            return TenantContext.for_identity(identity)
        request.session.pop(SESSION_TOKEN_KEY, None)

    header_value = request.headers.get("Authorization")
    bearer_token = parse_bearer_token(header_value)
    if bearer_token:
        identity = await manager.verify(bearer_token, expected_type=BEARER_KINDS)
        if identity is not None:
            return TenantContext.for_identity(identity)
        logger.debug("tenant_bearer_rejected")
    # One response for missing, malformed and rejected credentials.
    raise Unauthorized()


def can_access(resource: str, tenant: TenantContext, resource_owner_id: int | None) -> bool:
    if has_capability(tenant.identity, Capability.ACCESS_ANY_TENANT):
        return True
    return resource_owner_id is not None and resource_owner_id == tenant.tenant_id


def validate_access(resource: str, tenant: TenantContext, resource_owner_id: int | None) -> None:
    if not can_access(resource, tenant, resource_owner_id):
        logger.info(
            "tenant_access_denied resource=%s tenant_id=%s owner_id=%s",
            resource,
            tenant.tenant_id,
            resource_owner_id,
        )
        raise Forbidden(f"Access denied to {resource}")
