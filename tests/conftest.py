"""Test configuration and fixtures."""

import asyncio
import os
from typing import Optional

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

# Set test environment variables BEFORE importing the app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["RATE_LIMIT_RPM"] = "100000"

from qa_access.credits.ledger import CreditLedger
from qa_access.credits.usage import ApiCallCounter
from qa_access.database.connection import db_manager
from qa_access.database.migrations import create_tables, drop_tables
from qa_access.main import app
from qa_access.security.tokens import create_access_token


def _file_engine(path) -> AsyncEngine:
    """File-backed SQLite: concurrent sessions get their own connections."""
    return create_async_engine(
        f"sqlite+aiosqlite:///{path}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
        echo=False,
    )


def _unbind():
    db_manager.engine = None
    db_manager.session_factory = None


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Fresh database per test, bound as the process-wide engine."""
    engine = _file_engine(tmp_path / "ledger.db")
    await create_tables(engine)
    db_manager.bind(engine)
    yield engine
    await drop_tables(engine)
    await engine.dispose()
    _unbind()


@pytest.fixture
def api_db(tmp_path):
    """Synchronous variant of ``db_engine`` for ``TestClient`` tests."""
    engine = _file_engine(tmp_path / "api.db")
    asyncio.run(create_tables(engine))
    db_manager.bind(engine)
    yield engine
    asyncio.run(engine.dispose())
    _unbind()


@pytest.fixture
def counter() -> ApiCallCounter:
    return ApiCallCounter()


@pytest.fixture
def ledger(db_engine, counter) -> CreditLedger:
    return CreditLedger(counter=counter)


@pytest.fixture
def client(api_db) -> TestClient:
    """Test client over a fresh database. Lifespan is not run."""
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_token():
    """Factory for signed access tokens."""
    def _make(
        role: Optional[str] = "manager",
        user_id: str = "user-1",
        username: str = "tester",
        instance_id: Optional[str] = None,
        organization_id: Optional[str] = "org-1",
        project_id: Optional[str] = None,
    ) -> str:
        return create_access_token(
            user_id=user_id,
            username=username,
            role=role,
            email=f"{username}@example.com",
            organization_id=organization_id,
            instance_id=instance_id,
            project_id=project_id,
        )
    return _make


@pytest.fixture
def auth_headers(make_token):
    """Factory for ``Authorization`` headers."""
    def _headers(role: Optional[str] = "manager", **kwargs) -> dict:
        return {"Authorization": f"Bearer {make_token(role, **kwargs)}"}
    return _headers
