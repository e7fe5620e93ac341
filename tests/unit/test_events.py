"""Event publisher tests: listeners, Redis fan-out, event log."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from funlab.config import Settings
from funlab.db.models import EventLog
from funlab.gamification.awardable import AwardableRef
from funlab.gamification.events import EventPublisher, LevelReached, XpAwarded

ALICE = AwardableRef("User", 1)
EVENT = XpAwarded(awardable=ALICE, metric_slug="combat-xp", amount=5, metric_total_xp=5, profile_total_xp=5)


class TestPayloads:
    def test_xp_awarded_payload(self):
        payload = EVENT.to_payload()
        assert payload["event"] == "xp_awarded"
        assert payload["awardable_type"] == "User"
        assert payload["awardable_id"] == 1
        assert payload["metric"] == "combat-xp"

    def test_level_reached_payload(self):
        event = LevelReached(awardable=ALICE, scope="group", slug="overall", old_level=1, new_level=3)
        assert event.to_payload()["scope"] == "group"
        assert event.to_payload()["new_level"] == 3


class TestPublish:
    @pytest.mark.asyncio
    async def test_listener_and_redis(self, db_session):
        received = []
        redis = AsyncMock()
        publisher = EventPublisher(redis, listeners=[received.append], channel_prefix="pubsub:test")

        await publisher.publish(db_session, EVENT)

        assert received == [EVENT]
        redis.publish.assert_awaited_once()
        channel, message = redis.publish.await_args.args
        assert channel == "pubsub:test:xp_awarded"
        assert json.loads(message)["amount"] == 5

    @pytest.mark.asyncio
    async def test_redis_failure_is_swallowed(self, db_session):
        redis = AsyncMock()
        redis.publish.side_effect = ConnectionError("down")
        received = []
        publisher = EventPublisher(redis, listeners=[received.append])

        await publisher.publish(db_session, EVENT)

        assert received == [EVENT]

    @pytest.mark.asyncio
    async def test_disabled(self, db_session):
        redis = AsyncMock()
        received = []
        publisher = EventPublisher(redis, listeners=[received.append], enabled=False)

        await publisher.publish(db_session, EVENT)

        assert received == []
        redis.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_event_log(self, db_session):
        publisher = EventPublisher(None, log_to_database=True)

        await publisher.publish(db_session, EVENT)
        await db_session.flush()

        rows = (await db_session.execute(select(EventLog))).scalars().all()
        assert [(r.event_type, r.awardable_type, r.awardable_id) for r in rows] == [("xp_awarded", "User", 1)]
        assert rows[0].payload["metric_total_xp"] == 5

    @pytest.mark.asyncio
    async def test_subscribe(self, db_session):
        publisher = EventPublisher()
        received = []
        publisher.subscribe(received.append)

        await publisher.publish(db_session, EVENT)

        assert received == [EVENT]

    @pytest.mark.asyncio
    async def test_close(self):
        redis = AsyncMock()
        publisher = EventPublisher(redis)

        await publisher.close()

        redis.aclose.assert_awaited_once()
        assert publisher.redis is None


class TestFromSettings:
    def test_no_redis_when_publishing_disabled(self):
        settings = Settings(publish_to_redis=False, log_events_to_database=True, event_channel_prefix="x")
        publisher = EventPublisher.from_settings(settings)

        assert publisher.redis is None
        assert publisher.log_to_database is True
        assert publisher.channel_prefix == "x"

    def test_uses_given_client(self):
        redis = AsyncMock()
        publisher = EventPublisher.from_settings(Settings(), redis_client=redis)
        assert publisher.redis is redis
