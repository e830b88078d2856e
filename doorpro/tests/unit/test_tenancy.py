from __future__ import annotations

import pytest

from doorpro.core.errors import Forbidden
from doorpro.domain.access import Identity, TenantContext
from doorpro.services.tenancy import can_access, parse_bearer_token, validate_access


def _tenant(identity_id: int, role: str = "free") -> TenantContext:
    identity = Identity(
        id=identity_id,
        username=f"user{identity_id}",
        email=f"user{identity_id}@example.test",
        full_name="Test",
        role=role,
    )
    return TenantContext.for_identity(identity)


def test_tenant_is_the_identity() -> None:
    tenant = _tenant(7)
    assert tenant.tenant_id == 7
    assert tenant.identity_id == 7


def test_owner_may_access_own_resource() -> None:
    validate_access("contacts", _tenant(1), 1)


@pytest.mark.parametrize("role", ["free", "pro"])
def test_cross_tenant_access_is_denied(role: str) -> None:
    with pytest.raises(Forbidden) as exc_info:
        validate_access("contacts", _tenant(1, role), 2)
    assert exc_info.value.reason == "Access denied to contacts"
    assert can_access("contacts", _tenant(1, role), 2) is False
    assert can_access("contacts", _tenant(1, role), None) is False


def test_admin_bypasses_ownership() -> None:
    validate_access("contacts", _tenant(1, "admin"), 2)


def test_bearer_header_parsing() -> None:
    assert parse_bearer_token("Bearer abc") == "abc"
    assert parse_bearer_token("bearer abc") == "abc"
    assert parse_bearer_token(None) is None
    assert parse_bearer_token("Bearer") is None
    assert parse_bearer_token("Token abc") is None
    assert parse_bearer_token("Bearer a b") is None
