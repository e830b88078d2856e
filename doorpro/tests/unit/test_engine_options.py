from __future__ import annotations

from doorpro.core.config import Settings
from doorpro.persistence.db import engine_options


def test_sqlite_keeps_driver_defaults() -> None:
    options = engine_options(Settings(database_url="sqlite+aiosqlite:///:memory:"))
    assert options == {"pool_pre_ping": True}


def test_postgres_pool_is_bounded_by_the_storage_budget() -> None:
    options = engine_options(
        Settings(
            database_url="postgresql+asyncpg://u:p@db/doorpro",
            api_db_pool_size=0,
            auth_storage_timeout_s=2.5,
            api_db_statement_timeout_ms=1500,
        )
    )
    assert options["pool_size"] == 1
    assert options["pool_timeout"] == 2.5
    assert options["connect_args"] == {"server_settings": {"statement_timeout": "1500"}}


def test_statement_timeout_can_be_disabled() -> None:
    options = engine_options(
        Settings(database_url="postgresql+asyncpg://u:p@db/doorpro", api_db_statement_timeout_ms=0)
    )
    assert "connect_args" not in options
