from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    FREE = "free"
    PRO = "pro"
    ADMIN = "admin"


class TokenKind(str, Enum):
    SESSION = "session"
    API = "api"
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


# Kinds that authenticate ordinary requests; the rest are single-use flow tokens.
BEARER_KINDS: frozenset[TokenKind] = frozenset({TokenKind.SESSION, TokenKind.API})


class AuditAction(str, Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    FAILED_LOGIN = "FAILED_LOGIN"


class MetricType(str, Enum):
    CONTACTS = "contacts"
    TERRITORIES = "territories"
    SCHEDULES = "schedules"
    API_REQUESTS = "api_requests"


class LimitedAction(str, Enum):
    CREATE_CONTACT = "create_contact"
    CREATE_TERRITORY = "create_territory"
    CREATE_SCHEDULE = "create_schedule"
    API_REQUEST = "api_request"


ACTION_METRICS: dict[LimitedAction, MetricType] = {
    LimitedAction.CREATE_CONTACT: MetricType.CONTACTS,
    LimitedAction.CREATE_TERRITORY: MetricType.TERRITORIES,
    LimitedAction.CREATE_SCHEDULE: MetricType.SCHEDULES,
    LimitedAction.API_REQUEST: MetricType.API_REQUESTS,
}


class Identity(BaseModel):
    # Authenticated identity as exposed to callers; the password hash never leaves the store.
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    full_name: str
    role: str
    email_verified: bool = False


class TenantContext(BaseModel):
    # Built once per request by the isolation gate and discarded with it.
    model_config = ConfigDict(frozen=True)

    tenant_id: int
    identity_id: int
    identity: Identity

    @classmethod
    def for_identity(cls, identity: Identity) -> "TenantContext":
        # One identity is one tenant; grouping would only change this constructor.
        return cls(tenant_id=identity.id, identity_id=identity.id, identity=identity)
