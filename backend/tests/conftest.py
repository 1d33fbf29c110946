# tests/conftest.py — Shared test fixtures
import os
import uuid
from http.cookies import SimpleCookie

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["SESSION_SECRET"] = "test-session-secret-for-unit-tests-only"
os.environ["ENVIRONMENT"] = "test"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id.apps.googleusercontent.com"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ["LOG_LEVEL"] = "WARNING"

from models import Base, User, UserRole
from auth import PasswordHasher, SessionManager
from config import get_settings
from database import get_db_session
from main import app

SESSION_COOKIE = get_settings().SESSION_COOKIE_NAME


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _make_user(db_session, username, name, email, password, role):
    user = User(
        id=str(uuid.uuid4()),
        username=username,
        name=name,
        email=email,
        password_hash=PasswordHasher.hash(password),
        role=role,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session):
    """A regular team member"""
    return await _make_user(
        db_session, "alice", "Alice Member", "alice@taskhub.dev", "alice-password", UserRole.TEAM_MEMBER,
    )


@pytest_asyncio.fixture
async def other_user(db_session):
    """A second team member"""
    return await _make_user(
        db_session, "bob", "Bob Member", "bob@taskhub.dev", "bob-password", UserRole.TEAM_MEMBER,
    )


@pytest_asyncio.fixture
async def leader_user(db_session):
    return await _make_user(
        db_session, "lena", "Lena Leader", "lena@taskhub.dev", "lena-password", UserRole.TEAM_LEADER,
    )


@pytest_asyncio.fixture
async def admin_user(db_session):
    """An administrator"""
    return await _make_user(
        db_session, "admin", "Admin User", "admin@taskhub.dev", "admin-password", UserRole.ADMIN,
    )


async def get_auth_headers(db_session, user: User) -> dict:
    """Open a server-side session for ``user`` and return its cookie header"""
    token = await SessionManager.create(db_session, user.id)
    return {"Cookie": f"{SESSION_COOKIE}={token}"}


def cookie_from(response, name: str = SESSION_COOKIE):
    """Value of a cookie set by ``response``, or None"""
    for header in response.headers.get_list("set-cookie"):
        jar = SimpleCookie()
        jar.load(header)
        if name in jar:
            return jar[name].value or None
    return None


def set_cookie_header(response, name: str = SESSION_COOKIE) -> str:
    """Raw Set-Cookie header for ``name``"""
    for header in response.headers.get_list("set-cookie"):
        if header.startswith(f"{name}="):
            return header
    return ""
