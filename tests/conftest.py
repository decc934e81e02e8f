import os
import sys
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Add the parent directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import Settings
from core.database import build_engine, build_session_factory, create_db_and_tables
from core.models import Challenge, UserProfile
from providers.change_provider import InProcessChangeProvider
from services.command_bus import CommandBus
from services.comment_service import CommentService
from services.directory_service import DirectoryService
from services.friendship_service import FriendshipService
from services.leaderboard_service import LeaderboardService
from services.participation_service import ParticipationService

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Controllable naive-UTC clock"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock starting at 2024-03-01 09:00 UTC"""
    return FakeClock(datetime(2024, 3, 1, 9, 0, 0))


@pytest_asyncio.fixture
async def session_factory():
    """Session factory bound to a fresh in-memory database."""
    engine = build_engine(TEST_DATABASE_URL)
    await create_db_and_tables(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def seeded(session_factory):
    """Users alice, bob, carol, dave (private) and two challenges by alice."""
    async with session_factory() as session:
        async with session.begin():
            session.add_all(
                [
                    UserProfile(user_id="u-alice", username="alice", display_name="Alice A"),
                    UserProfile(user_id="u-bob", username="bob", display_name="Bob B"),
                    UserProfile(user_id="u-carol", username="carol", display_name="Carol C"),
                    UserProfile(
                        user_id="u-dave",
                        username="dave",
                        display_name="Dave D",
                        is_public=False,
                    ),
                    Challenge(
                        id="ch-10",
                        title="Ten day run",
                        duration_days=10,
                        points_reward=100,
                        created_by="u-alice",
                    ),
                    Challenge(
                        id="ch-3",
                        title="Three day read",
                        duration_days=3,
                        points_reward=30,
                        created_by="u-alice",
                    ),
                ]
            )
    return session_factory


@pytest.fixture
def directory_service(seeded):
    return DirectoryService(seeded)


@pytest.fixture
def friendship_service(seeded):
    return FriendshipService(seeded)


@pytest.fixture
def participation_service(seeded, clock):
    return ParticipationService(seeded, clock=clock, tz=timezone.utc)


@pytest.fixture
def comment_service(seeded, clock):
    return CommentService(seeded, max_length=2000, clock=clock)


@pytest.fixture
def leaderboard_service(seeded, clock):
    return LeaderboardService(seeded, clock=clock, tz=timezone.utc)


@pytest.fixture
def change_provider():
    return InProcessChangeProvider()


@pytest.fixture
def command_bus(
    friendship_service,
    participation_service,
    comment_service,
    leaderboard_service,
    change_provider,
):
    return CommandBus(
        friendship_service,
        participation_service,
        comment_service,
        leaderboard_service,
        provider=change_provider,
    )


@pytest.fixture
def test_settings():
    return Settings(environment="test", log_level="DEBUG", api_key="test_api_key")


@pytest_asyncio.fixture
async def async_client(
    command_bus, directory_service, test_settings, monkeypatch
) -> AsyncGenerator[AsyncClient, None]:
    """Async client for the app, wired to the in-memory database."""
    from api.dependencies import get_command_bus, get_directory_service
    from main import app

    monkeypatch.setattr("core.config._settings", test_settings)
    app.dependency_overrides[get_command_bus] = lambda: command_bus
    app.dependency_overrides[get_directory_service] = lambda: directory_service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def api_headers():
    return {"X-API-Key": "test_api_key", "X-User-Id": "u-alice"}

