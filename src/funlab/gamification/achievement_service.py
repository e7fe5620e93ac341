"""Achievement grant service with duplicate prevention and notification."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from funlab.db.models import Achievement, AchievementGrant
from funlab.gamification import store
from funlab.gamification.awardable import AwardableRef
from funlab.gamification.errors import (
    AlreadyGrantedError,
    InvalidStateError,
    NotFoundError,
    OptedOutError,
)
from funlab.gamification.events import AchievementUnlocked, EventPublisher

logger = structlog.get_logger()


async def has_achievement(db: AsyncSession, awardable: AwardableRef, achievement: str | Achievement) -> bool:
    """Check if the awardable already holds an achievement."""
    if isinstance(achievement, str):
        found = await store.get_achievement_by_slug(db, achievement)
        if found is None:
            return False
        achievement = found
    return await store.get_achievement_grant(db, achievement.id, awardable) is not None


class AchievementService:
    """Grants achievements: {not granted} -> {granted}, never back."""

    def __init__(
        self,
        db: AsyncSession,
        publisher: EventPublisher,
        *,
        enforce_type_restriction: bool = True,
    ) -> None:
        self.db = db
        self.publisher = publisher
        self.enforce_type_restriction = enforce_type_restriction

    async def exists(self, slug: str) -> bool:
        return await store.get_achievement_by_slug(self.db, slug) is not None

    async def grant(
        self,
        awardable: AwardableRef,
        achievement: str | Achievement,
        reason: str | None = None,
        source: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> AchievementGrant:
        """Grant an achievement.

        Checks, in order: opt-out, existence, active flag, awardable type
        restriction, existing grant. The (achievement, awardable) unique
        constraint backs the existing-grant check; a violation from a
        concurrent grant is reported as AlreadyGrantedError too.
        """
        profile = await store.get_profile(self.db, awardable)
        if profile is not None and profile.is_opted_out():
            raise OptedOutError("Recipient has opted out of gamification")

        if isinstance(achievement, str):
            slug = achievement
            found = await store.get_achievement_by_slug(self.db, slug)
            if found is None:
                raise NotFoundError(f"Achievement '{slug}' not found", {"slug": [f"Unknown achievement '{slug}'"]})
            achievement = found

        if not achievement.is_active:
            raise InvalidStateError(f"Achievement '{achievement.slug}' is not active")

        if self.enforce_type_restriction and not achievement.applies_to(awardable.type):
            raise InvalidStateError(
                f"Achievement '{achievement.slug}' is restricted to {achievement.awardable_type}",
                {"recipient": [f"Expected {achievement.awardable_type}, got {awardable.type}"]},
            )

        if await store.get_achievement_grant(self.db, achievement.id, awardable) is not None:
            raise AlreadyGrantedError(f"Achievement '{achievement.slug}' already granted")

        if profile is None:
            profile = await store.get_or_create_profile(self.db, awardable)

        grant = AchievementGrant(
            achievement_id=achievement.id,
            profile_id=profile.id,
            awardable_type=awardable.type,
            awardable_id=awardable.id,
            reason=reason,
            source=source,
            meta=meta or None,
            granted_at=datetime.now(timezone.utc),
        )
        try:
            async with self.db.begin_nested():
                self.db.add(grant)
        except IntegrityError:
            if await store.get_achievement_grant(self.db, achievement.id, awardable) is None:
                raise
            raise AlreadyGrantedError(f"Achievement '{achievement.slug}' already granted") from None

        await store.increment_achievement_count(self.db, profile)

        logger.info(
            "achievement_granted",
            achievement=achievement.slug,
            awardable=str(awardable),
            source=source,
        )
        await self.publisher.publish(self.db, AchievementUnlocked(
            awardable=awardable,
            achievement_slug=achievement.slug,
            achievement_name=achievement.name,
            grant_id=grant.id,
            reason=reason,
            source=source,
        ))
        return grant
