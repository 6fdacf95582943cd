import os
from collections.abc import AsyncGenerator
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# The suite runs on a throwaway SQLite file per test unless told otherwise
os.environ.setdefault("DATABASE_URL", "sqlite:///./medbook_test.db")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("STORAGE_RETRY_BACKOFF_SECONDS", "0")

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import insert  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool  # noqa: E402

from app.core.redis_client import get_redis_client  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.database import get_db, to_async_url  # noqa: E402
from app.dependencies import get_notification_service  # noqa: E402
from app.main import app  # noqa: E402
from app.models import doctors, metadata, users  # noqa: E402

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Database for one test: TEST_DATABASE_URL if set, else a fresh SQLite file."""
    if TEST_DATABASE_URL:
        return to_async_url(TEST_DATABASE_URL)
    return f"sqlite+aiosqlite:///{tmp_path / 'medbook_test.db'}"


@pytest_asyncio.fixture
async def db_session(database_url: str) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    # NullPool avoids sharing connections across event loops
    test_engine = create_async_engine(database_url, echo=False, poolclass=NullPool)

    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)

    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    # Drop tables after test
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def mock_redis() -> MagicMock:
    """Redis stand-in that always misses."""
    redis_client = MagicMock()
    redis_client.get.return_value = None
    return redis_client


@pytest.fixture
def notifier() -> MagicMock:
    """Notification service double recording every transition it is told about."""
    service = MagicMock()
    service.on_transition = AsyncMock(return_value=True)
    return service


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    mock_redis: MagicMock,
    notifier: MagicMock,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis_client] = lambda: mock_redis
    app.dependency_overrides[get_notification_service] = lambda: notifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def _insert_user(db_session: AsyncSession, **values) -> dict:
    result = await db_session.execute(insert(users).values(**values).returning(users))
    row = dict(result.mappings().one())
    await db_session.commit()
    return row


@pytest_asyncio.fixture
async def patient_user(db_session: AsyncSession) -> dict:
    """Create a patient in the database."""
    return await _insert_user(
        db_session,
        email="patient@example.com",
        full_name="Test Patient",
        role="patient",
        is_active=True,
    )


@pytest_asyncio.fixture
async def other_patient(db_session: AsyncSession) -> dict:
    """Create a second patient in the database."""
    return await _insert_user(
        db_session,
        email="other@example.com",
        full_name="Other Patient",
        role="patient",
        is_active=True,
    )


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession) -> dict:
    """Create an admin in the database."""
    return await _insert_user(
        db_session,
        email="admin@example.com",
        full_name="Test Admin",
        role="admin",
        is_active=True,
    )


@pytest_asyncio.fixture
async def doctor(db_session: AsyncSession) -> dict:
    """Create an active doctor with a consultation fee."""
    result = await db_session.execute(
        insert(doctors)
        .values(
            name="Dr. John Doe",
            specialty="Cardiology",
            consultation_fee=Decimal("3500.00"),
            is_active=True,
        )
        .returning(doctors)
    )
    row = dict(result.mappings().one())
    await db_session.commit()
    return row


def make_auth_headers(user: dict) -> dict:
    """Bearer headers for a user row."""
    token = create_access_token(
        data={"sub": str(user["id"]), "email": user["email"]},
        expires_delta=timedelta(minutes=30),
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(patient_user: dict) -> dict:
    """Create authentication headers for the patient."""
    return make_auth_headers(patient_user)


@pytest.fixture
def other_auth_headers(other_patient: dict) -> dict:
    """Create authentication headers for the second patient."""
    return make_auth_headers(other_patient)


@pytest.fixture
def admin_headers(admin_user: dict) -> dict:
    """Create authentication headers for the admin."""
    return make_auth_headers(admin_user)
