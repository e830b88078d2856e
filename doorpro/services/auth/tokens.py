from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import hashlib
import logging
import secrets
from typing import Awaitable, Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from doorpro.core.config import Settings, get_settings
from doorpro.core.errors import StorageError
from doorpro.domain.access import Identity, TokenKind
from doorpro.domain.models import AuthToken
from doorpro.persistence.repos import tokens as tokens_repo
from doorpro.persistence.repos.users import to_identity


logger = logging.getLogger(__name__)

ExpectedKinds = TokenKind | str | Iterable[TokenKind | str] | None
RedeemStep = Callable[[AsyncSession, Identity], Awaitable[None]]


def hash_token(raw_token: str) -> str:
    # SHA-256 is deterministic for lookup and one-way for storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_token(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


def token_ttl(kind: TokenKind, settings: Settings | None = None) -> timedelta:
    resolved = settings or get_settings()
    if kind is TokenKind.API:
        return timedelta(days=resolved.api_token_ttl_days)
    if kind is TokenKind.PASSWORD_RESET:
        return timedelta(hours=resolved.password_reset_token_ttl_hours)
    if kind is TokenKind.EMAIL_VERIFICATION:
        return timedelta(hours=resolved.email_verification_token_ttl_hours)
    return timedelta(hours=resolved.session_token_ttl_hours)


def _normalize_kinds(expected: ExpectedKinds) -> tuple[str, ...] | None:
    if expected is None:
        return None
    if isinstance(expected, (TokenKind, str)):
        return (TokenKind(expected).value,)
    return tuple(TokenKind(kind).value for kind in expected)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """Issue, verify, revoke and sweep opaque bearer tokens.

    Only `issue` raises; every read or revoke path degrades to None/False/0 on
    storage trouble so request handling treats it as "unauthenticated".
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        time_provider: Callable[[], datetime] | None = None,
        settings: Settings | None = None,
    ) -> None:
        if session_factory is None:
            from doorpro.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        # Injected clock lets tests move past expiry without sleeping.
        self._time_provider = time_provider or _utc_now
        self._settings = settings or get_settings()

    def now(self) -> datetime:
        return self._time_provider()

    async def issue(
        self,
        identity_id: int,
        token_type: TokenKind | str,
        ip: str | None = None,
        agent: str | None = None,
    ) -> str:
        kind = TokenKind(token_type)
        raw_token = generate_token(self._settings.token_bytes)
        now = self.now()
        try:
            async with self._session_factory() as session:
                await tokens_repo.insert_token(
                    session,
                    identity_id=identity_id,
                    token_hash=hash_token(raw_token),
                    token_type=kind.value,
                    expires_at=now + token_ttl(kind, self._settings),
                    created_at=now,
                    issued_from_ip=ip,
                    issued_from_agent=agent,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "token_issue_failed identity_id=%s token_type=%s",
                identity_id,
                kind.value,
                exc_info=exc,
            )
            raise StorageError("Unable to persist token") from exc
        logger.info("token_issued identity_id=%s token_type=%s", identity_id, kind.value)
        return raw_token

    async def verify(self, raw_token: str | None, expected_type: ExpectedKinds = None) -> Identity | None:
        if not raw_token:
            return None
        try:
            kinds = _normalize_kinds(expected_type)
        except ValueError:
            return None
        try:
            found = await asyncio.wait_for(
                self._lookup(hash_token(raw_token), kinds),
                timeout=self._settings.auth_storage_timeout_s,
            )
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            logger.warning("token_verify_storage_error", exc_info=exc)
            return None
        if found is None:
            logger.debug("token_verify_rejected")
            return None
        token_id, identity = found
        await self._touch_last_used(token_id)
        return identity

    async def _lookup(self, token_hash: str, kinds: tuple[str, ...] | None) -> tuple[int, Identity] | None:
        async with self._session_factory() as session:
            row = await tokens_repo.find_usable(
                session, token_hash=token_hash, now=self.now(), token_types=kinds
            )
            if row is None:
                return None
            token, user = row
            return token.id, to_identity(user)

    async def _touch_last_used(self, token_id: int) -> None:
        # Best-effort bookkeeping; a failure here must not fail verification.
        try:
            async with self._session_factory() as session:
                await asyncio.wait_for(
                    tokens_repo.touch_last_used(session, token_id=token_id, now=self.now()),
                    timeout=self._settings.auth_storage_timeout_s,
                )
                await session.commit()
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            logger.warning("token_touch_failed token_id=%s", token_id, exc_info=exc)

    async def revoke(self, raw_token: str | None) -> bool:
        if not raw_token:
            return False
        try:
            async with self._session_factory() as session:
                changed = await tokens_repo.revoke_by_hash(session, token_hash=hash_token(raw_token))
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("token_revoke_failed", exc_info=exc)
            return False
        return changed > 0

    async def revoke_all(self, identity_id: int, token_type: ExpectedKinds = None) -> int:
        try:
            kinds = _normalize_kinds(token_type)
        except ValueError:
            return 0
        try:
            async with self._session_factory() as session:
                count = await tokens_repo.revoke_for_identity(
                    session, identity_id=identity_id, token_types=kinds
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("token_revoke_all_failed identity_id=%s", identity_id, exc_info=exc)
            return 0
        logger.info(
            "tokens_revoked identity_id=%s token_types=%s count=%s",
            identity_id,
            ",".join(kinds) if kinds else "all",
            count,
        )
        return count

    async def redeem(
        self,
        raw_token: str | None,
        expected_type: TokenKind | str,
        then: RedeemStep | None = None,
    ) -> Identity | None:
        """Verify and revoke a single-use token in one transaction.

        Two concurrent redemptions of the same token cannot both succeed: the
        loser's conditional revoke touches no row and it gets None.

        `then` runs inside the same transaction, so the token is only consumed
        if the follow-up write commits too. Storage failures raise
        `StorageError` when a follow-up is given and return None otherwise.
        """
        if not raw_token:
            return None
        try:
            kinds = _normalize_kinds(expected_type)
        except ValueError:
            return None
        try:
            async with self._session_factory() as session:
                row = await tokens_repo.find_usable(
                    session, token_hash=hash_token(raw_token), now=self.now(), token_types=kinds
                )
                if row is None:
                    return None
                token, user = row
                changed = await tokens_repo.revoke_by_id(session, token_id=token.id)
                if changed == 0:
                    await session.rollback()
                    return None
                identity = to_identity(user)
                if then is not None:
                    await then(session, identity)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("token_redeem_failed", exc_info=exc)
            if then is not None:
                raise StorageError("Unable to complete token redemption") from exc
            return None
        return identity

    async def list_active(self, identity_id: int) -> list[AuthToken]:
        try:
            async with self._session_factory() as session:
                return await tokens_repo.list_usable_for_identity(
                    session, identity_id=identity_id, now=self.now()
                )
        except SQLAlchemyError as exc:
            logger.warning("token_list_failed identity_id=%s", identity_id, exc_info=exc)
            return []

    async def sweep(self) -> int:
        # Capture "now" once so a clock step mid-pass cannot widen the delete window.
        cutoff = self.now() - timedelta(seconds=max(0, self._settings.token_sweep_grace_s))
        try:
            async with self._session_factory() as session:
                deleted = await tokens_repo.delete_expired(session, cutoff=cutoff)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("token_sweep_failed", exc_info=exc)
            return 0
        if deleted:
            logger.info("token_sweep_deleted count=%s", deleted)
        return deleted


_token_manager: TokenManager | None = None


def get_token_manager() -> TokenManager:
    global _token_manager
    if _token_manager is None:
        _token_manager = TokenManager()
    return _token_manager


def reset_token_manager() -> None:
    # Drop the cached manager so tests pick up fresh settings.
    global _token_manager
    _token_manager = None
