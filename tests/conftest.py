"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from funlab.config import Settings
from funlab.database import close_db, create_schema, get_session, init_db
from funlab.gamification import setup_service
from funlab.gamification.achievement_service import AchievementService
from funlab.gamification.engine import AwardEngine
from funlab.gamification.events import EngineEvent, EventPublisher

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@dataclass
class User:
    id: int


@dataclass
class Team:
    id: int


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        publish_to_redis=False,
        log_format="console",
    )


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory database per test, schema built from the ORM metadata."""
    await init_db(TEST_DATABASE_URL)
    await create_schema()
    async for session in get_session():
        yield session
        await session.rollback()
        break
    await close_db()


@pytest.fixture
def events() -> list[EngineEvent]:
    return []


@pytest.fixture
def mock_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def publisher(events: list[EngineEvent], mock_redis: AsyncMock) -> EventPublisher:
    return EventPublisher(mock_redis, listeners=[events.append])


@pytest.fixture
def achievements(db_session: AsyncSession, publisher: EventPublisher) -> AchievementService:
    return AchievementService(db_session, publisher)


@pytest.fixture
def engine(db_session: AsyncSession, publisher: EventPublisher, settings: Settings) -> AwardEngine:
    return AwardEngine(db_session, publisher=publisher, settings=settings)


@pytest.fixture
def user() -> User:
    return User(id=1)


@pytest.fixture
def other_user() -> User:
    return User(id=2)


@pytest.fixture
def team() -> Team:
    return Team(id=1)


CATALOGUE = [
    setup_service.AchievementConfig(slug="first-login", name="First Login"),
    setup_service.AchievementConfig(slug="combat-novice"),
    setup_service.AchievementConfig(slug="combat-veteran"),
    setup_service.AchievementConfig(slug="rising-star"),
    setup_service.AchievementConfig(slug="team-spirit", awardable_type="Team"),
    setup_service.AchievementConfig(slug="retired", active=False),
    setup_service.MetricConfig(slug="combat-xp"),
    setup_service.MetricLevelConfig(metric="combat-xp", level=1, xp=0),
    setup_service.MetricLevelConfig(metric="combat-xp", level=2, xp=100, achievements=("combat-novice",)),
    setup_service.MetricLevelConfig(metric="combat-xp", level=3, xp=500, achievements=("combat-veteran",)),
    setup_service.MetricConfig(slug="crafting-xp"),
    setup_service.MetricLevelConfig(metric="crafting-xp", level=1, xp=0),
    setup_service.MetricLevelConfig(metric="crafting-xp", level=2, xp=50),
    setup_service.MetricConfig(slug="legacy-xp", active=False),
    setup_service.GroupConfig(slug="total-player-level"),
    setup_service.GroupMetricConfig(group="total-player-level", metric="combat-xp", weight=1.0),
    setup_service.GroupMetricConfig(group="total-player-level", metric="crafting-xp", weight=0.8),
    setup_service.GroupLevelConfig(group="total-player-level", level=1, xp=0),
    setup_service.GroupLevelConfig(group="total-player-level", level=2, xp=40, achievements=("rising-star",)),
    setup_service.GroupLevelConfig(group="total-player-level", level=3, xp=1000),
    setup_service.GroupConfig(slug="fighter-track"),
    setup_service.GroupMetricConfig(group="fighter-track", metric="combat-xp"),
    setup_service.GroupLevelConfig(group="fighter-track", level=1, xp=0),
    setup_service.GroupLevelConfig(group="fighter-track", level=2, xp=100),
    setup_service.PrizeConfig(slug="gift-card", type="physical", cost=25, inventory=1),
    setup_service.PrizeConfig(slug="sticker"),
    setup_service.PrizeConfig(slug="old-prize", active=False),
]


@pytest_asyncio.fixture
async def catalogue(db_session: AsyncSession) -> AsyncSession:
    """Session with two metrics, two groups, achievements and prizes configured.

    combat-xp:          L1 0, L2 100 (combat-novice), L3 500 (combat-veteran)
    crafting-xp:        L1 0, L2 50
    total-player-level: combat x1.0 + crafting x0.8; L1 0, L2 40 (rising-star), L3 1000
    fighter-track:      combat x1.0; L1 0, L2 100
    """
    await setup_service.apply_config(db_session, CATALOGUE)
    return db_session
