from __future__ import annotations

import asyncio
import os
from pathlib import Path
import shutil
import tempfile

# Point the engine at a throwaway sqlite file before revgrowth.persistence.db is imported.
_DB_DIR = Path(tempfile.mkdtemp(prefix="revgrowth-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR / 'revgrowth.db'}")

import pytest  # noqa: E402

from revgrowth.core.config import get_settings  # noqa: E402
from revgrowth.domain.models import Base  # noqa: E402
from revgrowth.persistence.db import engine  # noqa: E402
from revgrowth.services.credits import reset_credit_ledger  # noqa: E402
from revgrowth.services.program import reset_lifecycle_manager, reset_snapshot_aggregator  # noqa: E402


async def _create_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


async def _drop_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def database_schema() -> None:
    # Build the schema once on its own loop; tests reconnect through a disposed pool.
    asyncio.run(_create_schema())
    yield
    asyncio.run(_drop_schema())
    shutil.rmtree(_DB_DIR, ignore_errors=True)


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_service_singletons() -> None:
    # Services cache settings and clocks; start every test from a clean slate.
    yield
    get_settings.cache_clear()
    reset_credit_ledger()
    reset_lifecycle_manager()
    reset_snapshot_aggregator()
