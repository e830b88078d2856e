from __future__ import annotations

import pytest

from doorpro.domain.access import AuditAction
from doorpro.services.audit import action_for_method, resource_from_path, sanitize_details


def test_audit_redacts_credentials_recursively() -> None:
    payload = {
        "password": "hunter2",
        "new_password": "hunter3",
        "session_token": "abc",
        "nested": {"authorization": "Bearer abc", "client_secret": "x"},
        "items": [{"api_key": "k"}, {"safe": 1}],
        "username": "alice",
    }
    sanitized = sanitize_details(payload)
    assert sanitized["password"] == "[REDACTED]"
    assert sanitized["new_password"] == "[REDACTED]"
    assert sanitized["session_token"] == "[REDACTED]"
    assert sanitized["nested"] == {"authorization": "[REDACTED]", "client_secret": "[REDACTED]"}
    assert sanitized["items"] == [{"api_key": "[REDACTED]"}, {"safe": 1}]
    assert sanitized["username"] == "alice"


@pytest.mark.parametrize(
    ("method", "expected"),
    [
        ("GET", AuditAction.READ),
        ("post", AuditAction.CREATE),
        ("PUT", AuditAction.UPDATE),
        ("PATCH", AuditAction.UPDATE),
        ("DELETE", AuditAction.DELETE),
        ("OPTIONS", AuditAction.READ),
    ],
)
def test_action_for_method(method: str, expected: AuditAction) -> None:
    assert action_for_method(method) is expected


def test_resource_is_first_segment_after_prefix() -> None:
    assert resource_from_path("/api/contacts/12") == "contacts"
    assert resource_from_path("/api/territories") == "territories"
    assert resource_from_path("/api") == "unknown"
    assert resource_from_path("/health") == "unknown"
    assert resource_from_path("/apiary/x") == "unknown"
    assert resource_from_path("/v2/schedules/3", prefix="/v2/") == "schedules"
