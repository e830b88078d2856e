from __future__ import annotations

from httpx import ASGITransport, AsyncClient
import pytest

from doorpro.apps.api.main import create_app
from doorpro.domain.access import TokenKind
from doorpro.services.auth.tokens import get_token_manager
from doorpro.tests.utils.auth import bearer, create_test_user, issue_token, login


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_session_cookie_takes_precedence_over_bearer() -> None:
    await create_test_user(username="alice")
    bob = await create_test_user(username="bob")
    bob_token = await issue_token(bob, TokenKind.API)

    async with _client() as client:
        await login(client, "alice")
        response = await client.get("/api/auth/me", headers=bearer(bob_token))

    assert response.status_code == 200
    assert response.json()["username"] == "alice"


@pytest.mark.asyncio
async def test_stale_session_falls_back_to_bearer_and_is_cleared() -> None:
    await create_test_user(username="alice")
    bob = await create_test_user(username="bob")
    bob_token = await issue_token(bob)

    async with _client() as client:
        session_token = (await login(client, "alice")).json()["token"]
        assert await get_token_manager().revoke(session_token) is True

        response = await client.get("/api/auth/me", headers=bearer(bob_token))
        assert response.status_code == 200
        assert response.json()["id"] == bob.id

        # The dropped session no longer authenticates on its own.
        assert (await client.get("/api/auth/me")).status_code == 401


@pytest.mark.asyncio
async def test_reset_tokens_are_not_bearer_credentials() -> None:
    identity = await create_test_user()
    reset_token = await issue_token(identity, TokenKind.PASSWORD_RESET)
    verification_token = await issue_token(identity, TokenKind.EMAIL_VERIFICATION)

    async with _client() as client:
        for token in (reset_token, verification_token):
            response = await client.get("/api/auth/me", headers=bearer(token))
            assert response.status_code == 401
            assert response.json()["error"]["message"] == "Authentication required"


@pytest.mark.asyncio
async def test_tenant_is_the_authenticated_identity() -> None:
    alice = await create_test_user(username="alice")
    bob = await create_test_user(username="bob")

    async with _client() as client:
        alice_me = await client.get("/api/auth/me", headers=bearer(await issue_token(alice)))
        bob_me = await client.get("/api/auth/me", headers=bearer(await issue_token(bob)))

    assert alice_me.json()["id"] == alice.id
    assert bob_me.json()["id"] == bob.id
