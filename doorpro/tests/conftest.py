from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any doorpro module builds it.
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"doorpro-tests-{os.getpid()}.sqlite3")
os.environ["DATABASE_URL"] = os.environ.get(
    "DOORPRO_TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_PATH}"
)
os.environ["TOKEN_SWEEP_ENABLED"] = "false"

import pytest  # noqa: E402

from doorpro.core.config import get_settings  # noqa: E402
from doorpro.domain.models import Base  # noqa: E402
from doorpro.persistence.db import engine  # noqa: E402
from doorpro.services.audit import get_audit_recorder, reset_audit_recorder  # noqa: E402
from doorpro.services.auth.tokens import reset_token_manager  # noqa: E402
from doorpro.services.usage import reset_usage_meter  # noqa: E402


def _reset_services() -> None:
    get_settings.cache_clear()
    reset_token_manager()
    reset_audit_recorder()
    reset_usage_meter()


@pytest.fixture(autouse=True)
async def fresh_database() -> None:
    # Rebuild the schema per test so rows never leak between cases.
    _reset_services()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Let fire-and-forget audit writes land before the loop closes.
    await get_audit_recorder().drain()
    _reset_services()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
