from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from contentsync.core.config import get_settings
from contentsync.domain.models import Base
from contentsync.services.telemetry import reset_telemetry


ADMIN_TOKEN = "test-admin-token"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    # Run jobs inline against the in-memory transport so tests never need Redis.
    monkeypatch.setenv("JOBS_EXECUTION_MODE", "inline")
    monkeypatch.setenv("REALTIME_TRANSPORT", "memory")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("ADMIN_API_TOKEN", ADMIN_TOKEN)
    monkeypatch.setenv("CONTENT_DIFF_MATERIALIZED_VIEWS", "")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_metrics() -> None:
    # Telemetry registries are process-wide; isolate counters per test.
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    # File-backed SQLite so concurrent sessions contend on real locks.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'contentsync.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn) -> None:
        # Serialize writers the way Postgres row locks would.
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
