"""Pytest configuration and shared fixtures for API tests."""

import os

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.pool import StaticPool

# Required settings must exist before anything calls load_settings()
os.environ.setdefault("JWT_SECRET", "test-access-secret")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret")
os.environ.setdefault("ENCRYPTION_MASTER_KEY", "k" * 48)
os.environ.setdefault("CORS_ORIGIN", "http://localhost:3000")

from authcore.config import Settings
from authcore.core.auth import hash_password
from authcore.core.rate_limit import MemoryCounterBackend
from authcore.db.session import create_session_maker, init_db, unit_of_work
from authcore.main import create_app
from authcore.models.user import Role, User
from authcore.services.crypto import EncryptionEngine
from authcore.services.email import EmailDeliveryError, EmailService
from authcore.services.tokens import TokenService

TEST_PASSWORD = "password123!"


def make_settings(**overrides) -> Settings:
    values = {
        "jwt_secret": "test-access-secret",
        "jwt_refresh_secret": "test-refresh-secret",
        "encryption_master_key": "k" * 48,
        "cors_origin": "http://localhost:3000",
        "database_url": "sqlite+aiosqlite://",
        "rate_limit_backend": "memory",
        "rate_limit_api_enabled": False,
        "bcrypt_rounds": 8,
        "rate_limit_ip_max_per_day": 1000,
        "rate_limit_id_max_fails": 5,
        "rate_limit_id_ip_max_fails": 10,
    }
    values.update(overrides)
    return Settings(**values)


class RecordingEmailService(EmailService):
    """Keeps outgoing mail in memory; set fail=True to simulate an SMTP outage."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    async def send(self, to_email: str, subject: str, body: str) -> None:
        if self.fail:
            raise EmailDeliveryError("SMTP unavailable")
        self.sent.append((to_email, subject, body))


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def session_maker(settings):
    """In-memory SQLite shared across sessions via StaticPool; tables created fresh per test."""
    maker = create_session_maker(
        settings,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(maker.kw["bind"])
    yield maker
    await maker.kw["bind"].dispose()


@pytest.fixture
def token_service(settings) -> TokenService:
    return TokenService(settings, EncryptionEngine(settings.encryption_master_key))


@pytest.fixture
def mailer(settings) -> RecordingEmailService:
    return RecordingEmailService(settings)


@pytest.fixture
def app(settings, session_maker, mailer):
    return create_app(
        settings,
        session_maker=session_maker,
        counter_backend=MemoryCounterBackend(),
        email_service=mailer,
    )


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def test_user(session_maker):
    """Create a verified user via DB and return it."""
    async with unit_of_work(session_maker) as session:
        user = User(
            email="test@test.com",
            password_hash=hash_password(TEST_PASSWORD, rounds=8),
            role=Role.USER,
            is_verified=True,
        )
        session.add(user)
    return user


async def fetch_all(session_maker, model, *where):
    async with session_maker() as session:
        r = await session.execute(select(model).where(*where))
        return list(r.scalars().all())
