from __future__ import annotations

from datetime import datetime
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from doorpro.apps.api.deps import get_db, get_recorder, get_tenant_context, get_tokens
from doorpro.apps.api.response import get_request_id
from doorpro.core.errors import InvalidCredentials, StorageError, TokenInvalid
from doorpro.domain.access import BEARER_KINDS, AuditAction, Identity, TenantContext, TokenKind
from doorpro.domain.models import AuthToken
from doorpro.persistence.repos import users as users_repo
from doorpro.services.audit import AuditRecorder, get_request_context
from doorpro.services.auth.credentials import authenticate
from doorpro.services.auth.delivery import log_only_delivery
from doorpro.services.auth.passwords import hash_password
from doorpro.services.auth.tokens import TokenManager
from doorpro.services.tenancy import SESSION_TOKEN_KEY, parse_bearer_token, session_token_from


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_AUTH_RESOURCE = "auth"


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=1024)


class LoginResponse(BaseModel):
    user: Identity
    token: str


class LogoutResponse(BaseModel):
    revoked: bool


class LogoutAllResponse(BaseModel):
    revoked: int


class TokenView(BaseModel):
    # Token metadata only; hashes and raw values are never returned after issue.
    id: int
    token_type: str
    created_at: datetime
    expires_at: datetime
    last_used_at: datetime | None
    issued_from_ip: str | None
    issued_from_agent: str | None


class ApiTokenResponse(BaseModel):
    token: str
    token_type: str


class PasswordResetRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)


class PasswordResetConfirm(BaseModel):
    token: str = Field(min_length=1, max_length=512)
    # bcrypt only reads the first 72 bytes.
    new_password: str = Field(min_length=8, max_length=72)


class EmailVerificationRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)


class EmailVerificationConfirm(BaseModel):
    token: str = Field(min_length=1, max_length=512)


class StatusResponse(BaseModel):
    status: str


def _to_token_view(row: AuthToken) -> TokenView:
    return TokenView(
        id=row.id,
        token_type=row.token_type,
        created_at=row.created_at,
        expires_at=row.expires_at,
        last_used_at=row.last_used_at,
        issued_from_ip=row.issued_from_ip,
        issued_from_agent=row.issued_from_agent,
    )


@router.post("/login")
async def login(
    payload: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    tokens: TokenManager = Depends(get_tokens),
    recorder: AuditRecorder = Depends(get_recorder),
) -> LoginResponse:
    context = get_request_context(request)
    try:
        identity = await authenticate(db, payload.username, payload.password)
    except InvalidCredentials:
        # No identity is attached on failure; the attempted username is the only lead.
        recorder.record(
            None,
            AuditAction.FAILED_LOGIN,
            _AUTH_RESOURCE,
            details={"username": payload.username, "user_agent": context["user_agent"]},
            ip=context["ip_address"],
            request_id=get_request_id(request),
        )
        raise

    token = await tokens.issue(
        identity.id,
        TokenKind.SESSION,
        ip=context["ip_address"],
        agent=context["user_agent"],
    )
    request.session[SESSION_TOKEN_KEY] = token
    recorder.record(
        identity.id,
        AuditAction.LOGIN,
        _AUTH_RESOURCE,
        resource_id=identity.id,
        details={"user_agent": context["user_agent"]},
        ip=context["ip_address"],
        request_id=get_request_id(request),
    )
    logger.info("login_succeeded identity_id=%s", identity.id)
    return LoginResponse(user=identity, token=token)


@router.post("/logout")
async def logout(
    request: Request,
    tenant: TenantContext = Depends(get_tenant_context),
    tokens: TokenManager = Depends(get_tokens),
    recorder: AuditRecorder = Depends(get_recorder),
) -> LogoutResponse:
    # Revoke whichever credential authenticated this request.
    raw_token = session_token_from(request) or parse_bearer_token(request.headers.get("Authorization"))
    revoked = await tokens.revoke(raw_token)
    request.session.clear()
    context = get_request_context(request)
    recorder.record(
        tenant.identity_id,
        AuditAction.LOGOUT,
        _AUTH_RESOURCE,
        resource_id=tenant.identity_id,
        ip=context["ip_address"],
        request_id=get_request_id(request),
    )
    return LogoutResponse(revoked=revoked)


@router.post("/logout-all")
async def logout_all(
    request: Request,
    tenant: TenantContext = Depends(get_tenant_context),
    tokens: TokenManager = Depends(get_tokens),
    recorder: AuditRecorder = Depends(get_recorder),
) -> LogoutAllResponse:
    count = await tokens.revoke_all(tenant.identity_id)
    request.session.clear()
    context = get_request_context(request)
    recorder.record(
        tenant.identity_id,
        AuditAction.LOGOUT,
        _AUTH_RESOURCE,
        resource_id=tenant.identity_id,
        details={"scope": "all", "revoked": count},
        ip=context["ip_address"],
        request_id=get_request_id(request),
    )
    return LogoutAllResponse(revoked=count)


@router.get("/me")
async def me(tenant: TenantContext = Depends(get_tenant_context)) -> Identity:
    return tenant.identity


@router.get("/tokens")
async def list_tokens(
    tenant: TenantContext = Depends(get_tenant_context),
    tokens: TokenManager = Depends(get_tokens),
) -> list[TokenView]:
    rows = await tokens.list_active(tenant.identity_id)
    return [_to_token_view(row) for row in rows]


@router.post("/api-tokens", status_code=status.HTTP_201_CREATED)
async def create_api_token(
    request: Request,
    tenant: TenantContext = Depends(get_tenant_context),
    tokens: TokenManager = Depends(get_tokens),
) -> ApiTokenResponse:
    # The raw token is returned exactly once; only its hash is stored.
    context = get_request_context(request)
    raw_token = await tokens.issue(
        tenant.identity_id,
        TokenKind.API,
        ip=context["ip_address"],
        agent=context["user_agent"],
    )
    return ApiTokenResponse(token=raw_token, token_type=TokenKind.API.value)


@router.post("/password-reset/request", status_code=status.HTTP_202_ACCEPTED)
async def request_password_reset(
    payload: PasswordResetRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    tokens: TokenManager = Depends(get_tokens),
) -> StatusResponse:
    # Same response whether or not the username exists.
    accepted = StatusResponse(status="accepted")
    try:
        user = await users_repo.get_by_username(db, payload.username)
    except SQLAlchemyError as exc:
        logger.warning("password_reset_lookup_failed", exc_info=exc)
        return accepted
    if user is None:
        return accepted

    identity = users_repo.to_identity(user)
    context = get_request_context(request)
    try:
        raw_token = await tokens.issue(
            identity.id,
            TokenKind.PASSWORD_RESET,
            ip=context["ip_address"],
            agent=context["user_agent"],
        )
    except StorageError:
        return accepted
    delivery = getattr(request.app.state, "token_delivery", None) or log_only_delivery
    await delivery(identity, TokenKind.PASSWORD_RESET, raw_token)
    return accepted


@router.post("/password-reset/confirm")
async def confirm_password_reset(
    payload: PasswordResetConfirm,
    request: Request,
    tokens: TokenManager = Depends(get_tokens),
    recorder: AuditRecorder = Depends(get_recorder),
) -> StatusResponse:
    # Hash before touching the token so a rejected password leaves it redeemable.
    try:
        password_hash = hash_password(payload.new_password)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "PASSWORD_REJECTED", "message": "Password is too long"},
        ) from exc

    async def apply_password(session: AsyncSession, identity: Identity) -> None:
        await users_repo.set_password_hash(session, identity.id, password_hash)

    identity = await tokens.redeem(payload.token, TokenKind.PASSWORD_RESET, then=apply_password)
    if identity is None:
        raise TokenInvalid("Invalid or expired reset token")

    # Existing logins predate the new password.
    await tokens.revoke_all(identity.id, BEARER_KINDS)
    context = get_request_context(request)
    recorder.record(
        identity.id,
        AuditAction.UPDATE,
        _AUTH_RESOURCE,
        resource_id=identity.id,
        details={"event": "password_reset"},
        ip=context["ip_address"],
        request_id=get_request_id(request),
    )
    return StatusResponse(status="password_updated")


@router.post("/email-verification/request", status_code=status.HTTP_202_ACCEPTED)
async def request_email_verification(
    payload: EmailVerificationRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    tokens: TokenManager = Depends(get_tokens),
) -> StatusResponse:
    # Same response for unknown, already verified and pending addresses.
    accepted = StatusResponse(status="accepted")
    try:
        user = await users_repo.get_by_email(db, payload.email)
    except SQLAlchemyError as exc:
        logger.warning("email_verification_lookup_failed", exc_info=exc)
        return accepted
    if user is None or user.email_verified:
        return accepted

    identity = users_repo.to_identity(user)
    # Only the newest verification link stays usable.
    await tokens.revoke_all(identity.id, TokenKind.EMAIL_VERIFICATION)
    context = get_request_context(request)
    try:
        raw_token = await tokens.issue(
            identity.id,
            TokenKind.EMAIL_VERIFICATION,
            ip=context["ip_address"],
            agent=context["user_agent"],
        )
    except StorageError:
        return accepted
    delivery = getattr(request.app.state, "token_delivery", None) or log_only_delivery
    await delivery(identity, TokenKind.EMAIL_VERIFICATION, raw_token)
    return accepted


@router.post("/email-verification/confirm")
async def confirm_email_verification(
    payload: EmailVerificationConfirm,
    request: Request,
    tokens: TokenManager = Depends(get_tokens),
    recorder: AuditRecorder = Depends(get_recorder),
) -> StatusResponse:
    async def mark_verified(session: AsyncSession, identity: Identity) -> None:
        await users_repo.mark_email_verified(session, identity.id)

    identity = await tokens.redeem(payload.token, TokenKind.EMAIL_VERIFICATION, then=mark_verified)
    if identity is None:
        raise TokenInvalid("Invalid or expired verification token")

    context = get_request_context(request)
    recorder.record(
        identity.id,
        AuditAction.UPDATE,
        _AUTH_RESOURCE,
        resource_id=identity.id,
        details={"event": "email_verified"},
        ip=context["ip_address"],
        request_id=get_request_id(request),
    )
    return StatusResponse(status="email_verified")
