"""
Pytest configuration and fixtures.

Every test gets a fresh SQLite file database and a fully wired set of
ledger services with four seeded accounts.
"""
from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from entitlement_ledger.api.main import create_app
from entitlement_ledger.config import Settings
from entitlement_ledger.core.services import LedgerServices, build_services
from entitlement_ledger.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from entitlement_ledger.database.models import Role

ADMIN = "admin_ama"
SECOND_ADMIN = "admin_kofi"
INSTRUCTOR = "instructor_awa"
LEARNER = "learner_moussa"
INTERNAL_SECRET = "test-internal-secret"


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        app_name="entitlement-ledger-test",
        app_env="test",
        log_level="DEBUG",
        grant_retry_base_delay=0,
        grant_retry_max_delay=0,
        internal_api_secret=INTERNAL_SECRET,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create the test engine and schema."""
    engine = create_engine_from_settings(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def services(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
) -> LedgerServices:
    """Ledger services with one learner, one instructor and two admins."""
    services = build_services(session_factory, test_settings)
    await services.accounts.upsert_account(ADMIN, Role.ADMIN)
    await services.accounts.upsert_account(SECOND_ADMIN, Role.ADMIN)
    await services.accounts.upsert_account(INSTRUCTOR, Role.INSTRUCTOR)
    await services.accounts.upsert_account(LEARNER, Role.STUDENT)
    return services


@pytest_asyncio.fixture
async def client(services: LedgerServices) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(services)
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def as_subject(subject_id: str) -> dict[str, str]:
    """Identity header set by the gateway for ``subject_id``."""
    return {"X-Subject-Id": subject_id}


def as_internal(secret: str = INTERNAL_SECRET) -> dict[str, str]:
    """Shared-secret header presented by internal collaborators."""
    return {"X-Internal-Token": secret}
