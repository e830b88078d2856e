from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from doorpro.domain.models import AuthToken, User


async def insert_token(
    session: AsyncSession,
    *,
    identity_id: int,
    token_hash: str,
    token_type: str,
    expires_at: datetime,
    created_at: datetime,
    issued_from_ip: str | None,
    issued_from_agent: str | None,
) -> AuthToken:
    row = AuthToken(
        identity_id=identity_id,
        token_hash=token_hash,
        token_type=token_type,
        expires_at=expires_at,
        created_at=created_at,
        issued_from_ip=issued_from_ip,
        issued_from_agent=issued_from_agent,
        revoked=False,
    )
    session.add(row)
    await session.flush()
    return row


async def find_usable(
    session: AsyncSession,
    *,
    token_hash: str,
    now: datetime,
    token_types: tuple[str, ...] | None = None,
) -> tuple[AuthToken, User] | None:
    # Filter revoked, expired and wrong-kind rows in one predicate so callers cannot tell them apart.
    stmt = (
        select(AuthToken, User)
        .join(User, AuthToken.identity_id == User.id)
        .where(
            AuthToken.token_hash == token_hash,
            AuthToken.revoked.is_(False),
            AuthToken.expires_at > now,
        )
    )
    if token_types:
        stmt = stmt.where(AuthToken.token_type.in_(token_types))
    result = await session.execute(stmt.limit(1))
    row = result.first()
    if row is None:
        return None
    token, user = row
    return token, user


async def touch_last_used(session: AsyncSession, *, token_id: int, now: datetime) -> None:
    await session.execute(update(AuthToken).where(AuthToken.id == token_id).values(last_used_at=now))


async def revoke_by_hash(session: AsyncSession, *, token_hash: str) -> int:
    # Only live rows transition, which keeps a second revoke a no-op.
    result = await session.execute(
        update(AuthToken)
        .where(AuthToken.token_hash == token_hash, AuthToken.revoked.is_(False))
        .values(revoked=True)
    )
    return result.rowcount or 0


async def revoke_by_id(session: AsyncSession, *, token_id: int) -> int:
    result = await session.execute(
        update(AuthToken)
        .where(AuthToken.id == token_id, AuthToken.revoked.is_(False))
        .values(revoked=True)
    )
    return result.rowcount or 0


async def revoke_for_identity(
    session: AsyncSession,
    *,
    identity_id: int,
    token_types: tuple[str, ...] | None = None,
) -> int:
    stmt = update(AuthToken).where(
        AuthToken.identity_id == identity_id,
        AuthToken.revoked.is_(False),
    )
    if token_types:
        stmt = stmt.where(AuthToken.token_type.in_(token_types))
    result = await session.execute(stmt.values(revoked=True))
    return result.rowcount or 0


async def delete_expired(session: AsyncSession, *, cutoff: datetime) -> int:
    # Revoked rows stay for audit; live rows past expiry and unused since the cutoff go.
    result = await session.execute(
        delete(AuthToken).where(
            AuthToken.revoked.is_(False),
            AuthToken.expires_at < cutoff,
            or_(AuthToken.last_used_at.is_(None), AuthToken.last_used_at < cutoff),
        )
    )
    return result.rowcount or 0


async def list_usable_for_identity(
    session: AsyncSession,
    *,
    identity_id: int,
    now: datetime,
) -> list[AuthToken]:
    result = await session.execute(
        select(AuthToken)
        .where(
            AuthToken.identity_id == identity_id,
            AuthToken.revoked.is_(False),
            AuthToken.expires_at > now,
        )
        .order_by(AuthToken.created_at.desc(), AuthToken.id.desc())
    )
    return list(result.scalars().all())
