from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from doorpro.apps.api.main import create_app
from doorpro.domain.access import TokenKind
from doorpro.domain.models import AuditLogEntry, AuthToken
from doorpro.persistence.db import SessionLocal
from doorpro.persistence.repos import users as users_repo
from doorpro.services.audit import get_audit_recorder
from doorpro.tests.utils.auth import DEFAULT_PASSWORD, bearer, create_test_user, issue_token, login


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _token_count(identity_id: int) -> int:
    async with SessionLocal() as session:
        result = await session.execute(
            select(func.count()).select_from(AuthToken).where(AuthToken.identity_id == identity_id)
        )
        return int(result.scalar_one())


async def _entries(action: str) -> list[AuditLogEntry]:
    await get_audit_recorder().drain()
    async with SessionLocal() as session:
        result = await session.execute(select(AuditLogEntry).where(AuditLogEntry.action == action))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_login_issues_session_token_and_cookie() -> None:
    identity = await create_test_user(username="alice")
    async with _client(create_app()) as client:
        response = await login(client, "alice")
        assert response.status_code == 200
        body = response.json()
        assert body["user"]["id"] == identity.id
        assert "password" not in str(body["user"])
        assert len(body["token"]) == 64
        assert "doorpro_session" in response.cookies

        # The cookie alone authenticates follow-up requests.
        me = await client.get("/api/auth/me")
        assert me.status_code == 200
        assert me.json()["username"] == "alice"

    async with _client(create_app()) as client:
        me = await client.get("/api/auth/me", headers=bearer(body["token"]))
        assert me.status_code == 200

    (entry,) = await _entries("LOGIN")
    assert entry.identity_id == identity.id


@pytest.mark.asyncio
async def test_wrong_password_records_failed_login_without_token() -> None:
    identity = await create_test_user(username="alice")
    async with _client(create_app()) as client:
        response = await login(client, "alice", "not-the-password")
        unknown = await login(client, "mallory", "whatever")

    assert response.status_code == 401
    assert response.json()["error"] == {"code": "AUTH_INVALID_CREDENTIALS", "message": "Invalid credentials"}
    assert unknown.status_code == 401
    assert unknown.json()["error"] == response.json()["error"]
    assert "doorpro_session" not in response.cookies
    assert await _token_count(identity.id) == 0

    entries = await _entries("FAILED_LOGIN")
    assert sorted(entry.details["username"] for entry in entries) == ["alice", "mallory"]
    assert all(entry.identity_id is None for entry in entries)


@pytest.mark.asyncio
async def test_requests_without_credentials_are_rejected() -> None:
    async with _client(create_app()) as client:
        missing = await client.get("/api/auth/me")
        malformed = await client.get("/api/auth/me", headers={"Authorization": "Token abc"})
        bogus = await client.get("/api/auth/me", headers=bearer("0" * 64))

    assert missing.status_code == 401
    assert missing.headers["WWW-Authenticate"] == "Bearer"
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert malformed.status_code == 401
    assert malformed.json()["error"] == missing.json()["error"]
    assert bogus.json()["error"] == missing.json()["error"]
    assert bogus.status_code == 401


@pytest.mark.asyncio
async def test_logout_revokes_the_presented_token() -> None:
    await create_test_user(username="alice")
    async with _client(create_app()) as client:
        token = (await login(client, "alice")).json()["token"]
        response = await client.post("/api/auth/logout")
        assert response.status_code == 200
        assert response.json() == {"revoked": True}
        assert (await client.get("/api/auth/me")).status_code == 401

    async with _client(create_app()) as client:
        assert (await client.get("/api/auth/me", headers=bearer(token))).status_code == 401

    assert len(await _entries("LOGOUT")) == 1


@pytest.mark.asyncio
async def test_logout_all_revokes_every_credential() -> None:
    identity = await create_test_user()
    first = await issue_token(identity)
    second = await issue_token(identity)
    api = await issue_token(identity, TokenKind.API)

    async with _client(create_app()) as client:
        response = await client.post("/api/auth/logout-all", headers=bearer(first))
        assert response.json() == {"revoked": 3}
        for token in (first, second, api):
            assert (await client.get("/api/auth/me", headers=bearer(token))).status_code == 401


@pytest.mark.asyncio
async def test_api_tokens_are_returned_once_and_listed_without_secrets() -> None:
    identity = await create_test_user()
    session_token = await issue_token(identity)

    async with _client(create_app()) as client:
        created = await client.post("/api/auth/api-tokens", headers=bearer(session_token))
        assert created.status_code == 201
        api_token = created.json()["token"]
        assert created.json()["token_type"] == "api"

        me = await client.get("/api/auth/me", headers=bearer(api_token))
        assert me.json()["id"] == identity.id

        listed = await client.get("/api/auth/tokens", headers=bearer(api_token))
        assert listed.status_code == 200
        items = listed.json()
        assert sorted(item["token_type"] for item in items) == ["api", "session"]
        assert api_token not in listed.text
        assert all("token_hash" not in item for item in items)


@pytest.mark.asyncio
async def test_password_reset_flow() -> None:
    identity = await create_test_user(username="alice")
    old_session = await issue_token(identity)
    delivered: list[tuple[int, str, str]] = []

    async def capture(target, kind, raw_token) -> None:
        delivered.append((target.id, kind.value, raw_token))

    app = create_app()
    app.state.token_delivery = capture
    async with _client(app) as client:
        unknown = await client.post("/api/auth/password-reset/request", json={"username": "nobody"})
        known = await client.post("/api/auth/password-reset/request", json={"username": "alice"})
        assert unknown.status_code == known.status_code == 202
        assert unknown.json() == known.json()
        assert len(delivered) == 1
        _, kind, reset_token = delivered[0]
        assert kind == "password_reset"

        # Reset tokens never authenticate ordinary requests.
        assert (await client.get("/api/auth/me", headers=bearer(reset_token))).status_code == 401

        confirmed = await client.post(
            "/api/auth/password-reset/confirm",
            json={"token": reset_token, "new_password": "brand-new-passphrase"},
        )
        assert confirmed.status_code == 200
        assert confirmed.json() == {"status": "password_updated"}

        replay = await client.post(
            "/api/auth/password-reset/confirm",
            json={"token": reset_token, "new_password": "another-passphrase"},
        )
        assert replay.status_code == 401
        assert replay.headers["WWW-Authenticate"] == "Bearer"
        assert replay.json()["error"] == {"code": "AUTH_TOKEN_INVALID", "message": "Invalid or expired token"}

        assert (await client.get("/api/auth/me", headers=bearer(old_session))).status_code == 401
        assert (await login(client, "alice", DEFAULT_PASSWORD)).status_code == 401
        assert (await login(client, "alice", "brand-new-passphrase")).status_code == 200


@pytest.mark.asyncio
async def test_validation_errors_do_not_echo_passwords() -> None:
    async with _client(create_app()) as client:
        response = await client.post(
            "/api/auth/password-reset/confirm",
            json={"token": "abc", "new_password": "pw9x!"},
        )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert "pw9x!" not in response.text


@pytest.mark.asyncio
async def test_reset_token_survives_a_failed_password_write(monkeypatch: pytest.MonkeyPatch) -> None:
    identity = await create_test_user(username="alice")
    reset_token = await issue_token(identity, TokenKind.PASSWORD_RESET)

    async def unavailable(session, identity_id, password_hash) -> bool:
        raise OperationalError("UPDATE users", {}, Exception("storage unavailable"))

    monkeypatch.setattr(users_repo, "set_password_hash", unavailable)
    async with _client(create_app()) as client:
        failed = await client.post(
            "/api/auth/password-reset/confirm",
            json={"token": reset_token, "new_password": "brand-new-passphrase"},
        )
        assert failed.status_code == 503

        monkeypatch.undo()
        retried = await client.post(
            "/api/auth/password-reset/confirm",
            json={"token": reset_token, "new_password": "brand-new-passphrase"},
        )
        assert retried.status_code == 200
        assert (await login(client, "alice", "brand-new-passphrase")).status_code == 200


@pytest.mark.asyncio
async def test_email_verification_flow() -> None:
    identity = await create_test_user(username="alice")
    delivered: list[tuple[str, str]] = []

    async def capture(target, kind, raw_token) -> None:
        delivered.append((kind.value, raw_token))

    app = create_app()
    app.state.token_delivery = capture
    async with _client(app) as client:
        unknown = await client.post("/api/auth/email-verification/request", json={"email": "nobody@example.test"})
        first = await client.post("/api/auth/email-verification/request", json={"email": identity.email})
        second = await client.post("/api/auth/email-verification/request", json={"email": identity.email})
        assert unknown.status_code == first.status_code == second.status_code == 202
        assert unknown.json() == first.json()
        assert [kind for kind, _ in delivered] == ["email_verification", "email_verification"]
        stale_token, fresh_token = (raw for _, raw in delivered)

        # A resend retires the earlier link.
        stale = await client.post("/api/auth/email-verification/confirm", json={"token": stale_token})
        assert stale.status_code == 401
        assert stale.json()["error"]["code"] == "AUTH_TOKEN_INVALID"

        confirmed = await client.post("/api/auth/email-verification/confirm", json={"token": fresh_token})
        assert confirmed.status_code == 200
        assert confirmed.json() == {"status": "email_verified"}
        replay = await client.post("/api/auth/email-verification/confirm", json={"token": fresh_token})
        assert replay.status_code == 401

        # Verification tokens never authenticate requests.
        assert (await client.get("/api/auth/me", headers=bearer(fresh_token))).status_code == 401
        me = await client.get("/api/auth/me", headers=bearer(await issue_token(identity)))
        assert me.json()["email_verified"] is True

        await client.post("/api/auth/email-verification/request", json={"email": identity.email})
        assert len(delivered) == 2


@pytest.mark.asyncio
async def test_reset_tokens_do_not_verify_email() -> None:
    identity = await create_test_user()
    reset_token = await issue_token(identity, TokenKind.PASSWORD_RESET)

    async with _client(create_app()) as client:
        response = await client.post("/api/auth/email-verification/confirm", json={"token": reset_token})

    assert response.status_code == 401
    async with SessionLocal() as session:
        user = await users_repo.get_by_id(session, identity.id)
    assert user.email_verified is False
