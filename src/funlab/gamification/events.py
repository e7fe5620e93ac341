"""Outbound engine notifications.

Events go to in-process listeners injected at construction, to Redis
pub/sub (``<prefix>:<event name>``) and optionally to the ``event_logs``
table. Redis failures are logged and swallowed so that a notification
outage never rolls back an award.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, ClassVar

import redis.asyncio as redis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from funlab.config import Settings
from funlab.db.models import EventLog
from funlab.gamification.awardable import AwardableRef

logger = structlog.get_logger()


@dataclass(frozen=True)
class EngineEvent:
    name: ClassVar[str] = "event"

    awardable: AwardableRef

    def to_payload(self) -> dict[str, Any]:
        return {
            "event": self.name,
            "awardable_type": self.awardable.type,
            "awardable_id": self.awardable.id,
        }


@dataclass(frozen=True)
class XpAwarded(EngineEvent):
    name: ClassVar[str] = "xp_awarded"

    metric_slug: str = ""
    amount: int = 0
    metric_total_xp: int = 0
    metric_level: int = 1
    profile_total_xp: int = 0
    reason: str | None = None
    source: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            **super().to_payload(),
            "metric": self.metric_slug,
            "amount": self.amount,
            "metric_total_xp": self.metric_total_xp,
            "metric_level": self.metric_level,
            "profile_total_xp": self.profile_total_xp,
            "reason": self.reason,
            "source": self.source,
            "meta": self.meta,
        }


@dataclass(frozen=True)
class LevelReached(EngineEvent):
    name: ClassVar[str] = "level_reached"

    scope: str = "metric"  # "metric" or "group"
    slug: str = ""
    old_level: int = 1
    new_level: int = 1

    def to_payload(self) -> dict[str, Any]:
        return {
            **super().to_payload(),
            "scope": self.scope,
            "slug": self.slug,
            "old_level": self.old_level,
            "new_level": self.new_level,
        }


@dataclass(frozen=True)
class AchievementUnlocked(EngineEvent):
    name: ClassVar[str] = "achievement_unlocked"

    achievement_slug: str = ""
    achievement_name: str = ""
    grant_id: int | None = None
    reason: str | None = None
    source: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            **super().to_payload(),
            "achievement": self.achievement_slug,
            "achievement_name": self.achievement_name,
            "grant_id": self.grant_id,
            "reason": self.reason,
            "source": self.source,
        }


@dataclass(frozen=True)
class PrizeAwarded(EngineEvent):
    name: ClassVar[str] = "prize_awarded"

    prize_slug: str = ""
    grant_id: int | None = None
    reason: str | None = None
    source: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            **super().to_payload(),
            "prize": self.prize_slug,
            "grant_id": self.grant_id,
            "reason": self.reason,
            "source": self.source,
            "meta": self.meta,
        }


@dataclass(frozen=True)
class AwardFailed(EngineEvent):
    name: ClassVar[str] = "award_failed"

    award_type: str = ""
    slug: str = ""
    failure_reason: str = ""
    message: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            **super().to_payload(),
            "award_type": self.award_type,
            "slug": self.slug,
            "failure_reason": self.failure_reason,
            "message": self.message,
            "context": self.context,
        }


Listener = Callable[[EngineEvent], None]


class EventPublisher:
    """Fans engine events out to listeners, Redis and the event log."""

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        listeners: Iterable[Listener] = (),
        *,
        enabled: bool = True,
        log_to_database: bool = False,
        channel_prefix: str = "pubsub:funlab",
    ) -> None:
        self.redis = redis_client
        self.listeners = list(listeners)
        self.enabled = enabled
        self.log_to_database = log_to_database
        self.channel_prefix = channel_prefix

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        listeners: Iterable[Listener] = (),
        redis_client: redis.Redis | None = None,
    ) -> EventPublisher:
        """Build a publisher, opening a Redis pool from settings when none is given."""
        if redis_client is None and settings.dispatch_events and settings.publish_to_redis:
            redis_client = redis.from_url(  # type: ignore[no-untyped-call]
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=50,
            )
        return cls(
            redis_client,
            listeners,
            enabled=settings.dispatch_events,
            log_to_database=settings.log_events_to_database,
            channel_prefix=settings.event_channel_prefix,
        )

    def subscribe(self, listener: Listener) -> None:
        self.listeners.append(listener)

    async def publish(self, db: AsyncSession, event: EngineEvent) -> None:
        if not self.enabled:
            return

        payload = event.to_payload()

        for listener in self.listeners:
            listener(event)

        if self.log_to_database:
            db.add(EventLog(
                event_type=event.name,
                awardable_type=event.awardable.type,
                awardable_id=event.awardable.id,
                payload=payload,
            ))

        if self.redis is not None:
            try:
                await self.redis.publish(
                    f"{self.channel_prefix}:{event.name}",
                    json.dumps(payload, default=str),
                )
            except Exception:
                logger.warning("event_publish_failed", event_name=event.name, exc_info=True)

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
