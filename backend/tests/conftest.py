# backend/tests/conftest.py
import os
import tempfile
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime

# Must be set before riskauth.core.config is imported
_LOG_DIR = tempfile.mkdtemp(prefix="riskauth-tests-")
os.environ.setdefault("SECURITY_LOG_PATH", os.path.join(_LOG_DIR, "security.log"))
os.environ.setdefault("PASSWORD_PEPPER", "test-pepper")
os.environ.setdefault("DATA_ENCRYPTION_KEYS", "test-encryption-key")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from riskauth.core.rate_limit import AttemptRateLimiter  # noqa: E402
from riskauth.db.base import Base  # noqa: E402
from riskauth.db.models.user import User  # noqa: E402
from riskauth.schemas.auth import LoginContext  # noqa: E402
from riskauth.services import authentication, password_service  # noqa: E402
from tests.factories.context_factory import make_context  # noqa: E402
from tests.factories.user_factory import UserFactory  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Creates/Disposes an in-memory engine FOR EACH TEST FUNCTION."""
    # StaticPool keeps every session on the one connection that owns the in-memory database
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Yields a database session per function, using the function-scoped engine."""
    TestSessionFactory = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)
    async with TestSessionFactory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    """Persist a user built by UserFactory. Keyword arguments override factory defaults."""

    async def _make_user(**kwargs) -> User:
        user = UserFactory.build(**kwargs)
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture(autouse=True)
def fresh_rate_limiters(monkeypatch: pytest.MonkeyPatch) -> None:
    """Give every test its own limiters so module-level counters never leak between tests."""
    monkeypatch.setattr(
        authentication,
        "login_rate_limiter",
        AttemptRateLimiter("login-test", max_attempts=100, window_seconds=60, block_seconds=300),
    )
    monkeypatch.setattr(
        authentication,
        "otp_rate_limiter",
        AttemptRateLimiter("otp-test", max_attempts=100, window_seconds=60, block_seconds=300),
    )
    monkeypatch.setattr(
        password_service,
        "otp_rate_limiter",
        AttemptRateLimiter("reset-test", max_attempts=100, window_seconds=60, block_seconds=300),
    )


@pytest.fixture
def context() -> LoginContext:
    return make_context()


@pytest.fixture
def now() -> datetime:
    return datetime.now(UTC)
