import socket
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from limits import parse
from limits.aio.storage import MemoryStorage
from pydantic import SecretStr
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from account_trust.core.config import settings
from account_trust.models.base import Base
from account_trust.services.activity_throttle import ActivityThrottle
from account_trust.services.rate_limiter import (
    NOTIFICATION,
    PRIVATE,
    PUBLIC,
    RateLimiter,
    RateLimitScope,
)
from account_trust.services.session_ledger import SessionRevocationLedger

# Use separate test database
TEST_DATABASE_URL = settings.database_url.replace(
    settings.database_name, f"{settings.database_name}_test"
)

# Test user ID (consistent across tests for predictable auth)
TEST_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
TEST_JTI = "test-session-jti-0001"

# Security: This is a test-only secret. Production uses a real secret from env.
TEST_AUTH_SECRET = "test-secret-key-that-is-at-least-32-characters-long"  # nosec B105  # gitleaks:allow


def create_test_jwt(
    user_id: uuid.UUID = TEST_USER_ID,
    *,
    jti: str = TEST_JTI,
    secret: str = TEST_AUTH_SECRET,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed session JWT for test authentication.

    Args:
        user_id: User UUID to encode in the sub claim.
        jti: Session identifier.
        secret: Signing secret (must match settings.auth_secret in tests).
        expires_delta: Time until expiration. Defaults to 1 hour.

    Returns:
        Encoded JWT string.
    """
    now = datetime.now(UTC)
    payload = {
        "sub": str(user_id),
        "jti": jti,
        "aud": settings.auth_audience,
        "iss": settings.auth_issuer,
        "exp": now + (expires_delta or timedelta(hours=1)),
        "iat": now,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def _is_postgres_available() -> bool:
    """Check if PostgreSQL is accepting connections on port 5432."""
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        result = sock.connect_ex(("127.0.0.1", 5432))
        sock.close()
        return result == 0
    except OSError:
        return False


# Check once at module load time
_POSTGRES_AVAILABLE = _is_postgres_available()


def skip_if_no_postgres() -> None:
    """Skip test if PostgreSQL is not available."""
    if not _POSTGRES_AVAILABLE:
        pytest.skip(
            "PostgreSQL not available on port 5432. "
            "Start database with: docker compose up -d"
        )


# =============================================================================
# In-memory Redis stand-in
# =============================================================================


class FakeRedis:
    """Implements the handful of Redis commands the ledger and throttle use.

    Set ``fail = True`` to make every command raise a connection error.
    """

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False
        self.commands: list[str] = []

    def _call(self, name: str) -> None:
        if self.fail:
            raise RedisConnectionError("redis unavailable")
        self.commands.append(name)

    async def set(
        self, key: str, value: Any, *, nx: bool = False, ex: int | None = None
    ) -> bool | None:
        self._call("set")
        if nx and key in self.strings:
            return None
        self.strings[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def get(self, key: str) -> str | None:
        self._call("get")
        return self.strings.get(key)

    async def sadd(self, key: str, *members: str) -> int:
        self._call("sadd")
        members_set = self.sets.setdefault(key, set())
        before = len(members_set)
        members_set.update(members)
        return len(members_set) - before

    async def sismember(self, key: str, member: str) -> int:
        self._call("sismember")
        return int(member in self.sets.get(key, set()))

    async def scard(self, key: str) -> int:
        self._call("scard")
        return len(self.sets.get(key, set()))

    async def expire(self, key: str, seconds: int) -> bool:
        self._call("expire")
        if key in self.sets or key in self.strings:
            self.ttls[key] = seconds
            return True
        return False

    async def delete(self, *keys: str) -> int:
        self._call("delete")
        removed = 0
        for key in keys:
            if self.sets.pop(key, None) is not None:
                removed += 1
            if self.strings.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def rename(self, src: str, dst: str) -> bool:
        self._call("rename")
        if src not in self.sets:
            raise ResponseError("ERR no such key")
        self.sets[dst] = self.sets.pop(src)
        self.ttls.pop(dst, None)
        if src in self.ttls:
            self.ttls[dst] = self.ttls.pop(src)
        return True

    def pipeline(self, transaction: bool = True) -> "FakePipeline":  # noqa: ARG002
        return FakePipeline(self)


class FakePipeline:
    """Queues FakeRedis calls and runs them on execute()."""

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._queued: list[tuple[Any, tuple, dict]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info: object) -> bool:
        self._queued.clear()
        return False

    def __getattr__(self, name: str) -> Any:
        command = getattr(self._redis, name)

        def queue(*args: Any, **kwargs: Any) -> "FakePipeline":
            self._queued.append((command, args, kwargs))
            return self

        return queue

    async def execute(self) -> list[Any]:
        if self._redis.fail:
            raise RedisConnectionError("redis unavailable")
        results = [await command(*a, **kw) for command, a, kw in self._queued]
        self._queued.clear()
        return results


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def ledger(fake_redis: FakeRedis) -> SessionRevocationLedger:
    return SessionRevocationLedger(fake_redis)  # type: ignore[arg-type]


@pytest.fixture
def throttle(fake_redis: FakeRedis) -> ActivityThrottle:
    return ActivityThrottle(fake_redis, window_seconds=300)  # type: ignore[arg-type]


@pytest.fixture
def rate_limiter() -> RateLimiter:
    """Limiter over in-memory storage with the default scope rates."""
    return RateLimiter(
        MemoryStorage(),
        [
            RateLimitScope(PUBLIC, parse("10/10 seconds")),
            RateLimitScope(PRIVATE, parse("5/minute")),
            RateLimitScope(NOTIFICATION, parse("1/minute")),
        ],
    )


@pytest.fixture
def mock_db() -> MagicMock:
    """AsyncSession stand-in for tests whose repositories are patched.

    ``begin_nested()`` works as an async context manager that does not
    swallow exceptions.
    """
    db = MagicMock(spec=AsyncSession)
    nested = MagicMock()
    nested.__aenter__ = AsyncMock(return_value=None)
    nested.__aexit__ = AsyncMock(return_value=False)
    db.begin_nested.return_value = nested
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.execute = AsyncMock()
    db.flush = AsyncMock()
    return db


@pytest.fixture
def fast_bcrypt(monkeypatch: pytest.MonkeyPatch) -> None:
    """Lowest bcrypt cost so hashing 16 codes stays fast."""
    monkeypatch.setattr(settings, "recovery_code_bcrypt_rounds", 4)
    monkeypatch.setattr(settings, "password_bcrypt_rounds", 4)


@pytest.fixture
def auth_secret(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setattr(settings, "auth_secret", SecretStr(TEST_AUTH_SECRET))
    return TEST_AUTH_SECRET


# =============================================================================
# Database fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine.

    Skips test if PostgreSQL is not available (e.g., Docker not running).
    """
    skip_if_no_postgres()

    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession):
    """Create the authenticated test user (password-less, unverified)."""
    from account_trust.models import User

    user = User(id=TEST_USER_ID, email="test@example.com", name="Test User")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    yield user


# =============================================================================
# API Test Fixtures
# =============================================================================


def build_test_app(
    *,
    ledger: SessionRevocationLedger,
    throttle: ActivityThrottle,
    rate_limiter: RateLimiter,
):
    """App without lifespan, with components injected on app.state."""
    from account_trust.main import create_app

    app = create_app(with_lifespan=False)
    app.state.ledger = ledger
    app.state.throttle = throttle
    app.state.rate_limiter = rate_limiter
    return app


@pytest_asyncio.fixture
async def mock_client(
    mock_db: MagicMock,
    ledger: SessionRevocationLedger,
    throttle: ActivityThrottle,
    rate_limiter: RateLimiter,
    auth_secret: str,  # noqa: ARG001 - signs the test JWT
) -> AsyncGenerator[AsyncClient, None]:
    """Authenticated client whose database session is ``mock_db``.

    Repositories must be patched by the test.
    """
    from account_trust.core.database import get_db

    app = build_test_app(ledger=ledger, throttle=throttle, rate_limiter=rate_limiter)

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield mock_db

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        cookies={settings.auth_cookie_name: create_test_jwt()},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(
    db_engine,
    test_user,  # noqa: ARG001 - ensures user exists
    ledger: SessionRevocationLedger,
    throttle: ActivityThrottle,
    rate_limiter: RateLimiter,
    auth_secret: str,  # noqa: ARG001 - signs the test JWT
) -> AsyncGenerator[AsyncClient, None]:
    """Authenticated client backed by the test database."""
    from account_trust.core.database import get_db

    app = build_test_app(ledger=ledger, throttle=throttle, rate_limiter=rate_limiter)

    test_session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with test_session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        cookies={settings.auth_cookie_name: create_test_jwt()},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
