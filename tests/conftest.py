"""
Pytest configuration and fixtures
"""
import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("IDENTITY_PROVIDER", "local")
os.environ.setdefault("SITE_URL", "http://clinic.test")

import time
import uuid
from typing import AsyncGenerator, Dict, Optional, Tuple

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.core.permissions import UserRole
from app.core.security import hash_password
from app.database import Base
from app.dependencies import Services, build_services
from app.main import app as fastapi_app
from app.models.identity import Identity
from app.models.user import User, UserStatus, utcnow
from app.providers.base import OneTimeTokenType
from app.utils.redis_client import RedisClient

# Test database URL (use SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite://"

ADMIN_EMAIL = "admin@stmarys-clinic.org"
ADMIN_PASSWORD = "admin-password-1"


class InMemoryRedis(RedisClient):
    """RedisClient with the server replaced by a dict"""

    def __init__(self):
        super().__init__("memory://")
        self.store: Dict[str, Tuple[str, Optional[float]]] = {}

    async def connect(self):
        pass

    async def disconnect(self):
        pass

    def _live(self, key: str) -> Optional[str]:
        entry = self.store.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires is not None and expires <= time.monotonic():
            del self.store[key]
            return None
        return value

    async def getdel(self, key: str) -> Optional[str]:
        value = self._live(key)
        self.store.pop(key, None)
        return value

    async def set(self, key: str, value: str, ex: Optional[int] = None):
        self.store[key] = (str(value), time.monotonic() + ex if ex else None)

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def ttl(self, key: str) -> int:
        if self._live(key) is None:
            return -2
        expires = self.store[key][1]
        return -1 if expires is None else max(0, int(expires - time.monotonic()))

    def link_token(self, token_type: OneTimeTokenType, identity_id: str) -> Optional[str]:
        """The most recent unconsumed link token issued to ``identity_id``"""
        prefix = f"otp:{token_type.value}:"
        found = None
        for key in list(self.store):
            if key.startswith(prefix) and self._live(key) == identity_id:
                found = key[len(prefix):]
        return found


@pytest.fixture(scope="function")
async def db_engine():
    """Create a test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
async def services(session_factory, redis) -> AsyncGenerator[Services, None]:
    built = build_services(session_factory, redis)
    yield built
    await built.close()


@pytest.fixture
def create_account(session_factory):
    """Insert an identity and its profile directly, bypassing invitation"""

    async def _create(email: str, role: UserRole = UserRole.DOCTOR, status: UserStatus = UserStatus.ACTIVE,
                      password: Optional[str] = "password-123", full_name: Optional[str] = None) -> str:
        identity_id = str(uuid.uuid4())
        async with session_factory() as db:
            db.add(Identity(
                id=identity_id,
                email=email,
                password_hash=hash_password(password) if password else None,
            ))
            db.add(User(
                id=identity_id,
                email=email,
                role=role,
                status=status,
                full_name=full_name,
                activated_at=utcnow() if status != UserStatus.PENDING else None,
            ))
            await db.commit()
        return identity_id

    return _create


@pytest.fixture
async def admin_id(create_account) -> str:
    return await create_account(ADMIN_EMAIL, UserRole.SUPER_ADMIN, password=ADMIN_PASSWORD, full_name="Clinic Admin")


@pytest.fixture
async def admin_store(services, admin_id):
    """Signed-in super admin"""
    return await services.registry.sign_in(ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture
def admin_session(admin_store):
    return admin_store.session


@pytest.fixture
async def client(services) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Create a test client; the lifespan is not run, services are injected"""
    fastapi_app.state.services = services
    transport = httpx.ASGITransport(app=fastapi_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture
async def admin_headers(client, admin_id) -> Dict[str, str]:
    response = await client.post("/api/v1/auth/sign-in", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    token = response.json()["tokens"]["access_token"]
    return {"Authorization": f"Bearer {token}"}
