from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from doorpro.apps.api.deps import get_db


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    database: str


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)):
    # Authentication depends on the store, so an unreachable database is reported as degraded.
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_database_unreachable", exc_info=exc)
        return JSONResponse(
            status_code=503,
            content=HealthResponse(status="degraded", database="unreachable").model_dump(),
        )
    return HealthResponse(status="ok", database="ok")
