from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from doorpro.core.config import Settings
from doorpro.domain.access import TokenKind
from doorpro.services.auth.tokens import generate_token, hash_token, token_ttl


def test_generated_tokens_carry_256_bits_and_do_not_repeat() -> None:
    tokens = {generate_token(32) for _ in range(50)}
    assert len(tokens) == 50
    assert all(len(token) == 64 for token in tokens)


def test_hash_is_deterministic_and_never_the_raw_value() -> None:
    raw = generate_token()
    digest = hash_token(raw)
    assert digest == hash_token(raw)
    assert digest != raw
    assert len(digest) == 64
    assert hash_token(raw + "x") != digest


def test_ttl_policy_per_kind() -> None:
    settings = Settings()
    assert token_ttl(TokenKind.SESSION, settings) == timedelta(hours=24)
    assert token_ttl(TokenKind.API, settings) == timedelta(days=30)
    assert token_ttl(TokenKind.PASSWORD_RESET, settings) == timedelta(hours=24)
    assert token_ttl(TokenKind.EMAIL_VERIFICATION, settings) == timedelta(hours=24)


def test_production_refuses_placeholder_session_secret() -> None:
    with pytest.raises(ValidationError):
        Settings(app_env="prod")
    assert Settings(app_env="prod", session_secret="x" * 48).app_env == "prod"


def test_token_entropy_floor_is_enforced() -> None:
    with pytest.raises(ValidationError):
        Settings(token_bytes=16)
