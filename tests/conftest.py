"""Shared fixtures: a throwaway SQLite database per test and a fake Digiforma API.

Every test gets its own database file, so no cleanup is needed and tests can
count rows freely.
"""
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from db.connection import session_scope
from db.models import Base
from digiforma.client import ConnectionTestResult


class FakeDigiformaClient:
    """Stands in for DigiformaClient; each fetch returns a copy of its list."""

    def __init__(self):
        self.companies = []
        self.trainees = []
        self.quotations = []
        self.invoices = []
        self.fail_on = None
        self.connection_result = ConnectionTestResult(success=True, message="Connection successful")

    def _fetch(self, name):
        if self.fail_on == name:
            raise RuntimeError(f"Digiforma unreachable while fetching {name}")
        return [dict(record) for record in getattr(self, name)]

    def fetch_companies(self):
        return self._fetch("companies")

    def fetch_trainees(self):
        return self._fetch("trainees")

    def fetch_quotations(self):
        return self._fetch("quotations")

    def fetch_invoices(self):
        return self._fetch("invoices")

    def test_connection(self):
        return self.connection_result


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    monkeypatch.setenv("DIGIFORMA_ENCRYPTION_KEY", "test-encryption-secret")


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'crm.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db_scope(engine):
    """get_db-style session scope bound to the test database."""
    return session_scope(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))


@pytest_asyncio.fixture
async def session(db_scope) -> AsyncGenerator[AsyncSession, None]:
    async with db_scope() as session:
        yield session


@pytest.fixture
def fake_client():
    return FakeDigiformaClient()
