from __future__ import annotations

from enum import Enum

from doorpro.domain.access import Identity, Role


class Capability(str, Enum):
    ACCESS_ANY_TENANT = "access_any_tenant"
    UNLIMITED_USAGE = "unlimited_usage"
    PRO_FEATURES = "pro_features"
    READ_ANY_AUDIT_LOG = "read_any_audit_log"


ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    Role.FREE.value: frozenset(),
    Role.PRO.value: frozenset({Capability.PRO_FEATURES}),
    Role.ADMIN.value: frozenset(Capability),
}


def normalize_role(role: str | None) -> str:
    # Unknown or missing roles get the least-privileged tier.
    normalized = (role or "").strip().lower()
    if normalized not in ROLE_CAPABILITIES:
        return Role.FREE.value
    return normalized


def role_allows(role: str | None, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES[normalize_role(role)]


def has_capability(identity: Identity, capability: Capability) -> bool:
    # Single role-dispatch point; handlers ask for capabilities, never compare role strings.
    return role_allows(identity.role, capability)
