from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from doorpro.domain.access import Identity
from doorpro.domain.models import User


def to_identity(user: User) -> Identity:
    # Project the stored row onto the public identity shape (no password hash).
    return Identity(
        id=user.id,
        username=user.username,
        email=user.email,
        full_name=user.full_name,
        role=user.role,
        email_verified=bool(user.email_verified),
    )


async def get_by_username(session: AsyncSession, username: str) -> User | None:
    # Exact, case-sensitive match on the stored username.
    result = await session.execute(select(User).where(User.username == username).limit(1))
    return result.scalar_one_or_none()


async def get_by_email(session: AsyncSession, email: str) -> User | None:
    result = await session.execute(select(User).where(User.email == email).limit(1))
    return result.scalar_one_or_none()


async def get_by_id(session: AsyncSession, identity_id: int) -> User | None:
    result = await session.execute(select(User).where(User.id == identity_id))
    return result.scalar_one_or_none()


async def get_role(session: AsyncSession, identity_id: int) -> str | None:
    result = await session.execute(select(User.role).where(User.id == identity_id))
    return result.scalar_one_or_none()


async def any_admin_exists(session: AsyncSession) -> bool:
    result = await session.execute(select(User.id).where(User.role == "admin").limit(1))
    return result.scalar_one_or_none() is not None


async def set_password_hash(session: AsyncSession, identity_id: int, password_hash: str) -> bool:
    result = await session.execute(
        update(User).where(User.id == identity_id).values(password_hash=password_hash)
    )
    return (result.rowcount or 0) > 0


async def insert_user(
    session: AsyncSession,
    *,
    username: str,
    email: str,
    full_name: str,
    password_hash: str,
    role: str,
) -> User:
    user = User(
        username=username,
        email=email,
        full_name=full_name,
        password_hash=password_hash,
        role=role,
    )
    session.add(user)
    await session.flush()
    return user


async def mark_email_verified(session: AsyncSession, identity_id: int) -> bool:
    result = await session.execute(
        update(User).where(User.id == identity_id).values(email_verified=True)
    )
    return (result.rowcount or 0) > 0
