"""Pytest configuration and fixtures."""

import os

# Keep tests independent of a developer's .env and local database
os.environ["FITLOBBY_DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["FITLOBBY_ACCESS_TOKEN"] = "user-1"

# Clear the settings cache to pick up the new environment variables
from fitlobby.settings import get_settings

get_settings.cache_clear()

from collections.abc import AsyncGenerator  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from fakes import FakeClock, FakeLobbyService  # noqa: E402
from fitlobby.api.client import LobbyApiClient  # noqa: E402
from fitlobby.db.session import create_session_factory, init_models  # noqa: E402
from fitlobby.lobby.models import CurrentUser  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    """Manually advanced clock."""
    return FakeClock()


@pytest.fixture
def user() -> CurrentUser:
    """The local participant (user 1)."""
    return CurrentUser(user_id=1, display_name="user1")


@pytest.fixture
def lobby_service() -> FakeLobbyService:
    """In-memory lobby service."""
    return FakeLobbyService()


@pytest.fixture
async def api(lobby_service: FakeLobbyService) -> AsyncGenerator[LobbyApiClient, None]:
    """Lobby API client talking to the fake service as user 1, without real sleeps."""
    client = LobbyApiClient(
        "http://test",
        token="user-1",
        transport=ASGITransport(app=lobby_service.app),
        sleep=AsyncMock(),
    )
    async with client:
        yield client


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a fresh in-memory SQLite database."""
    # One shared connection so every session sees the same in-memory database
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await init_models(engine)
    yield create_session_factory(engine)
    await engine.dispose()
