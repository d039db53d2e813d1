"""Shared fixtures for the authorization server test suite.

Uses an in-memory SQLite database with StaticPool so all sessions share the
same connection (committed data is visible across sessions).
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import authserver.oauth2.models  # noqa: F401 ensure all tables are registered for create_all
from authserver.core.auth import get_session_user_id
from authserver.database import Base
from authserver.main import app
from authserver.oauth2.clients import ClientRegistry
from authserver.oauth2.repository import OAuth2Repository
from authserver.oauth2.revocation import RevocationCache
from authserver.oauth2.server import AuthorizationServer


# ---------------------------------------------------------------------------
# In-memory SQLite test engine (shared via StaticPool)
# ---------------------------------------------------------------------------

test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@event.listens_for(test_engine.sync_engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


# ---------------------------------------------------------------------------
# Auto-use: create/drop tables for every test
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
async def _setup_db():
    """Fresh schema and an empty app-level revocation cache for every test."""
    app.state.revocation_cache.clear()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

class FakeClock:
    """Mutable clock injected into the engine so expiry can be tested without sleeping."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
async def db():
    """Session for engine, registry and repository tests that bypass HTTP."""
    async with TestSession() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def revocation_cache():
    return RevocationCache()


@pytest.fixture
def repository(db: AsyncSession):
    return OAuth2Repository(db)


@pytest.fixture
def server(repository, revocation_cache, clock):
    return AuthorizationServer(repository, revocation_cache, clock=clock)


@pytest.fixture
def registry(server):
    return ClientRegistry(server)


def _new_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def make_client(registry: ClientRegistry):
    """Factory fixture: register a client and return its view incl. the plaintext secret."""

    async def _make(
        owner_id: str = "owner-1",
        redirect_uris: list[str] | None = None,
        is_public: bool = False,
        name: str | None = None,
    ) -> dict:
        return await registry.register_client(
            user_id=owner_id,
            name=name or f"app-{_new_id()[:8]}",
            redirect_uris=redirect_uris or ["https://x/cb"],
            is_public=is_public,
        )

    return _make


@pytest.fixture
def issue_tokens(server: AuthorizationServer):
    """Factory fixture: run the authorization code flow and return (client, TokenPair)."""

    async def _issue(client_data: dict, user_id: str = "u1", scope: str = "feed"):
        client = await server.authorize_client(client_data["client_id"], client_data["client_secret"])
        redirect_uri = client_data["redirect_uris"][0]
        issued = await server.issue_authorization_code(client, user_id, scope, redirect_uri)
        pair = await server.exchange_authorization_code(issued.code, client, redirect_uri)
        return client, pair

    return _issue


@pytest.fixture
async def client():
    """httpx AsyncClient wired to the FastAPI app, backed by the test session factory.

    The ``X-Test-User`` header stands in for the host application's
    session authentication.
    """
    import httpx

    def _session_user(request: Request) -> str | None:
        return request.headers.get("x-test-user")

    app.dependency_overrides[get_session_user_id] = _session_user
    original_factory = app.state.session_factory
    app.state.session_factory = TestSession

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.state.session_factory = original_factory
    app.dependency_overrides.clear()


@pytest.fixture
def as_user():
    """Return a callable that builds the session-stand-in header for a user."""
    def _build(user_id: str) -> dict:
        return {"X-Test-User": user_id}
    return _build


@pytest.fixture
def auth_header():
    """Return a callable that builds an Authorization header from an access token."""
    def _build(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}
    return _build


@pytest.fixture
def session_factory():
    """The test session factory, for code that opens its own sessions."""
    return TestSession
