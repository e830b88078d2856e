from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from doorpro.core.errors import InvalidCredentials
from doorpro.domain.access import Identity, Role
from doorpro.persistence.repos import users as users_repo
from doorpro.services.auth.passwords import DUMMY_PASSWORD_HASH, hash_password, verify_password


logger = logging.getLogger(__name__)


async def authenticate(session: AsyncSession, username: str, password: str) -> Identity:
    # One failure type for every cause so the caller cannot probe which usernames exist.
    try:
        user = await users_repo.get_by_username(session, username)
    except SQLAlchemyError as exc:
        logger.error("credential_lookup_failed", exc_info=exc)
        raise InvalidCredentials() from exc

    if user is None:
        verify_password(DUMMY_PASSWORD_HASH, password)
        raise InvalidCredentials()
    if not verify_password(user.password_hash, password):
        raise InvalidCredentials()
    return users_repo.to_identity(user)


async def create_admin_user(
    session: AsyncSession,
    *,
    username: str,
    email: str,
    password: str,
    full_name: str,
) -> Identity:
    # Bootstrap only: a second admin must be promoted by an existing one, not created here.
    if await users_repo.any_admin_exists(session):
        raise ValueError("Admin user already exists")
    user = await users_repo.insert_user(
        session,
        username=username,
        email=email,
        full_name=full_name,
        password_hash=hash_password(password),
        role=Role.ADMIN.value,
    )
    await session.commit()
    logger.info("admin_user_created identity_id=%s", user.id)
    return users_repo.to_identity(user)
