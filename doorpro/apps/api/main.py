from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from starlette.background import BackgroundTask, BackgroundTasks
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import Response

from doorpro.apps.api.deps import pending_usage
from doorpro.apps.api.errors import register_exception_handlers
from doorpro.apps.api.response import REQUEST_ID_HEADER
from doorpro.apps.api.routes.audit import router as audit_router
from doorpro.apps.api.routes.auth import router as auth_router
from doorpro.apps.api.routes.health import router as health_router
from doorpro.apps.api.routes.usage import router as usage_router
from doorpro.core.config import get_settings
from doorpro.core.errors import StorageError
from doorpro.core.logging import configure_logging
from doorpro.domain.access import MetricType, TenantContext
from doorpro.services.audit import action_for_method, get_audit_recorder, resource_from_path
from doorpro.services.auth.delivery import log_only_delivery
from doorpro.services.auth.tokens import get_token_manager
from doorpro.services.maintenance import TokenSweeper
from doorpro.services.usage import get_usage_meter


logger = logging.getLogger(__name__)


def _under_prefix(path: str, prefix: str) -> bool:
    normalized = "/" + prefix.strip("/")
    return path == normalized or path.startswith(normalized + "/")


async def _after_response(
    *,
    tenant: TenantContext,
    method: str,
    path: str,
    status_code: int,
    user_agent: str | None,
    ip: str | None,
    request_id: str,
    prefix: str,
    charges: list[MetricType],
) -> None:
    # Runs once the body is sent; failures here are logged and never reach the client.
    await get_audit_recorder().write(
        tenant.identity_id,
        action_for_method(method),
        resource_from_path(path, prefix),
        details={"method": method, "path": path, "status_code": status_code, "user_agent": user_agent},
        ip=ip,
        request_id=request_id,
    )
    try:
        await get_usage_meter().record_usage(tenant.identity_id, MetricType.API_REQUESTS)
    except StorageError as exc:
        logger.warning(
            "api_request_metering_failed identity_id=%s request_id=%s",
            tenant.identity_id,
            request_id,
            exc_info=exc,
        )
    if not 200 <= status_code < 300:
        return
    # Creation units count only for actions that actually succeeded.
    for metric_type in charges:
        try:
            await get_usage_meter().record_usage(tenant.identity_id, metric_type)
        except StorageError as exc:
            logger.warning(
                "usage_charge_failed identity_id=%s metric=%s request_id=%s",
                tenant.identity_id,
                metric_type.value,
                request_id,
                exc_info=exc,
            )


def _attach_background(response: Response, task: BackgroundTask) -> None:
    existing = response.background
    if existing is None:
        response.background = task
        return
    tasks = BackgroundTasks()
    tasks.add_task(existing)
    tasks.add_task(task)
    response.background = tasks


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    sweeper: TokenSweeper | None = None
    if settings.token_sweep_enabled:
        sweeper = TokenSweeper(get_token_manager(), settings.token_sweep_interval_s)
        sweeper.start()
    app.state.token_sweeper = sweeper
    try:
        yield
    finally:
        if sweeper is not None:
            await sweeper.stop()
        # Flush audit writes still in flight before the loop closes.
        await get_audit_recorder().drain()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="DoorPro Access API", lifespan=lifespan)
    # Replaced by deployments that send password reset mail.
    app.state.token_delivery = log_only_delivery

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)

        tenant = getattr(request.state, "tenant_context", None)
        if tenant is not None and _under_prefix(request.url.path, settings.api_prefix):
            _attach_background(
                response,
                BackgroundTask(
                    _after_response,
                    tenant=tenant,
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    user_agent=request.headers.get("user-agent"),
                    ip=request.client.host if request.client else None,
                    request_id=request_id,
                    prefix=settings.api_prefix,
                    charges=pending_usage(request),
                ),
            )
        return response

    # Registered last so it is outermost; request.session exists in the middleware and routes.
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie=settings.session_cookie_name,
        max_age=settings.session_max_age_s,
        https_only=settings.session_https_only,
        same_site="lax",
    )

    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(auth_router, prefix=settings.api_prefix)
    # Self-serve usage dashboard and limit previews.
    app.include_router(usage_router, prefix=settings.api_prefix)
    app.include_router(audit_router, prefix=settings.api_prefix)

    return app


app = create_app()
