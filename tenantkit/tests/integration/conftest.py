"""Conftest for integration tests.

Integration tests inherit every fixture from the parent conftest.py; the
``adapters`` fixture is overridden so the same use case fixtures
(create_user, create_organization, org_world, ...) run against Postgres
through the SQL adapter.

These tests require a running Postgres database. Point TEST_DATABASE_URL at
it (``postgresql+asyncpg://...``); without it the tests are skipped. Tables
are created before and dropped after each test.
"""

import os
from collections.abc import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from tenantkit.core.background_tasks import drain_background_tasks
from tenantkit.core.ports import Adapters
from tenantkit.core.system import FixedClock
from tenantkit.db.session import create_db_engine, drop_db, init_db
from tenantkit.db.unit_of_work import build_sql_adapters

TEST_DATABASE_URL_ENV = "TEST_DATABASE_URL"


@pytest.fixture
def database_url() -> str:
    url = os.environ.get(TEST_DATABASE_URL_ENV)
    if not url:
        pytest.skip(f"{TEST_DATABASE_URL_ENV} is not set")
    return url


@pytest.fixture
async def engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    test_engine = create_db_engine(database_url)
    await drop_db(test_engine)
    await init_db(test_engine)
    try:
        yield test_engine
    finally:
        await drain_background_tasks()
        await drop_db(test_engine)
        await test_engine.dispose()


@pytest.fixture
def adapters(engine: AsyncEngine, clock: FixedClock) -> Adapters:
    return build_sql_adapters(engine, clock=clock, max_attempts=1)
