from __future__ import annotations


class DoorProError(Exception):
    """Base error for the doorpro access-control core."""


class InvalidCredentials(DoorProError):
    """Username/password pair did not match; never says which half was wrong."""

    def __init__(self) -> None:
        super().__init__("Invalid credentials")


class TokenInvalid(DoorProError):
    """Token not found, revoked, expired or of the wrong kind."""


class Unauthorized(DoorProError):
    """No tenant could be resolved for the request."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)
        self.message = message


class Forbidden(DoorProError):
    """Tenant resolved but the access rule denied the operation."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class QuotaExceeded(DoorProError):
    """Tier usage limit reached for the requested action."""

    def __init__(self, reason: str, *, current_usage: int | None, limit: int | None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.current_usage = current_usage
        self.limit = limit


class StorageError(DoorProError):
    """Durable store unavailable or rejected a write."""


class IdentityNotFound(DoorProError):
    """No identity exists for the given id."""
