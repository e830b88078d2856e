from __future__ import annotations

import pytest

from doorpro.domain.access import Identity
from doorpro.services.auth.capabilities import Capability, has_capability, normalize_role


def _identity(role: str) -> Identity:
    return Identity(id=1, username="u", email="u@example.test", full_name="U", role=role)


def test_admin_holds_every_capability() -> None:
    admin = _identity("admin")
    assert all(has_capability(admin, capability) for capability in Capability)


def test_pro_only_unlocks_pro_features() -> None:
    pro = _identity("pro")
    assert has_capability(pro, Capability.PRO_FEATURES)
    assert not has_capability(pro, Capability.ACCESS_ANY_TENANT)
    assert not has_capability(pro, Capability.UNLIMITED_USAGE)
    assert not has_capability(pro, Capability.READ_ANY_AUDIT_LOG)


@pytest.mark.parametrize("role", ["free", "enterprise", ""])
def test_free_and_unknown_roles_hold_nothing(role: str) -> None:
    identity = _identity(role)
    assert normalize_role(role) == "free"
    assert not any(has_capability(identity, capability) for capability in Capability)


def test_role_matching_ignores_case_and_whitespace() -> None:
    assert normalize_role(" Admin ") == "admin"
    assert has_capability(_identity("PRO"), Capability.PRO_FEATURES)
