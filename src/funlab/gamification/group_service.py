"""Metric level groups: weighted XP aggregation and group level progression.

A group's XP is never stored. It is recomputed from the member metrics on
every read; ``ProfileMetricGroup.current_level`` is a write-through cache
refreshed each time a member metric receives XP.
"""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from funlab.db.models import MetricLevelGroup, Profile, ProfileMetricGroup
from funlab.gamification import store
from funlab.gamification.achievement_service import AchievementService
from funlab.gamification.awardable import AwardableRef
from funlab.gamification.events import EventPublisher, LevelReached
from funlab.gamification.metric_level_service import apply_grant_effects
from funlab.gamification.progression import (
    evaluate_ladder,
    level_for_xp,
    next_level_after,
    plan_grants,
    progress_percentage,
    threshold_of,
    weighted_total,
)
from funlab.gamification.results import ProgressionResult
from funlab.gamification.schemas import LevelInfo

logger = structlog.get_logger()

CASCADE_SOURCE = "metric-level-group-progression"


class MetricLevelGroupService:
    """Aggregation of several GamedMetrics into one leveling track."""

    def __init__(self, db: AsyncSession, achievements: AchievementService, publisher: EventPublisher) -> None:
        self.db = db
        self.achievements = achievements
        self.publisher = publisher

    async def _resolve(self, group: str | MetricLevelGroup) -> MetricLevelGroup | None:
        if isinstance(group, MetricLevelGroup):
            return group
        return await store.get_group_by_slug(self.db, group)

    async def total_xp_for_profile(self, profile: Profile, group: MetricLevelGroup) -> int:
        """Weighted member XP, each member truncated to int before summing."""
        members = await store.get_group_members(self.db, group.id)
        progress = await store.get_profile_metrics(
            self.db, profile.id, [member.gamed_metric_id for member in members]
        )
        return weighted_total(
            (progress[member.gamed_metric_id].total_xp if member.gamed_metric_id in progress else 0, member.weight)
            for member in members
        )

    async def get_total_xp(self, awardable: AwardableRef, group: str | MetricLevelGroup) -> int:
        resolved = await self._resolve(group)
        if resolved is None:
            return 0
        profile = await store.get_profile(self.db, awardable)
        if profile is None:
            return 0
        return await self.total_xp_for_profile(profile, resolved)

    async def get_or_create_profile_metric_group(
        self, profile: Profile, group: MetricLevelGroup
    ) -> ProfileMetricGroup:
        return await store.get_or_create_profile_metric_group(self.db, profile, group)

    async def check_progression(
        self,
        profile_metric_group: ProfileMetricGroup,
        profile: Profile,
        group: MetricLevelGroup,
        awardable: AwardableRef,
    ) -> ProgressionResult:
        """Raise the stored group level from the live weighted total and grant level achievements.

        The row is re-read under a row lock so concurrent awards to the same
        profile serialize their evaluate-then-persist step.
        """
        profile_metric_group = await store.lock_profile_metric_group(self.db, profile_metric_group)
        old_level = profile_metric_group.current_level
        total_xp = await self.total_xp_for_profile(profile, group)
        levels = await store.get_group_levels(self.db, group.id)

        evaluation = evaluate_ladder(levels, total_xp, old_level)
        if not evaluation.level_reached:
            return ProgressionResult(level_reached=False)

        await store.raise_profile_metric_group_level(self.db, profile_metric_group, evaluation.new_level)
        logger.info(
            "level_reached",
            scope="group",
            group=group.slug,
            awardable=str(awardable),
            old_level=old_level,
            new_level=evaluation.new_level,
            group_xp=total_xp,
        )
        await self.publisher.publish(self.db, LevelReached(
            awardable=awardable,
            scope="group",
            slug=group.slug,
            old_level=old_level,
            new_level=evaluation.new_level,
        ))

        by_level = await store.get_achievements_for_group_levels(
            self.db, [lvl.id for lvl in evaluation.unlocked]
        )
        held = await store.get_held_achievement_ids(self.db, awardable)
        effects = plan_grants(
            evaluation.unlocked,
            by_level,
            awardable.type,
            held,
            scope="metric_level_group",
            scope_id=group.id,
        )
        grants = await apply_grant_effects(self.achievements, awardable, effects, CASCADE_SOURCE)

        return ProgressionResult(
            level_reached=True,
            new_level=evaluation.new_level,
            levels_unlocked=evaluation.unlocked,
            grants=grants,
        )

    async def check_groups_for_metric(
        self, profile: Profile, metric_id: int, awardable: AwardableRef
    ) -> dict[str, ProgressionResult]:
        """Run progression for every group containing ``metric_id``, keyed by group slug."""
        results: dict[str, ProgressionResult] = {}
        for group in await store.get_groups_containing_metric(self.db, metric_id):
            profile_metric_group = await self.get_or_create_profile_metric_group(profile, group)
            results[group.slug] = await self.check_progression(profile_metric_group, profile, group, awardable)
        return results

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def has_reached_level(self, profile: Profile, group_slug: str, level: int) -> bool:
        """Stored level first; falls back to the live weighted total against the level's threshold."""
        group = await store.get_group_by_slug(self.db, group_slug)
        if group is None:
            return False

        stored = await store.get_profile_metric_group(self.db, profile.id, group.id)
        if stored is not None and stored.current_level >= level:
            return True

        threshold = threshold_of(await store.get_group_levels(self.db, group.id), level)
        if threshold is None:
            return False
        return await self.total_xp_for_profile(profile, group) >= threshold

    async def get_current_level(self, awardable: AwardableRef, group: str | MetricLevelGroup) -> int:
        """Stored level, or the live level when no stored row exists yet."""
        resolved = await self._resolve(group)
        if resolved is None:
            return 1
        profile = await store.get_profile(self.db, awardable)
        if profile is None:
            return 1
        stored = await store.get_profile_metric_group(self.db, profile.id, resolved.id)
        if stored is not None:
            return stored.current_level
        total_xp = await self.total_xp_for_profile(profile, resolved)
        return level_for_xp(await store.get_group_levels(self.db, resolved.id), total_xp)

    async def get_next_level_threshold(self, awardable: AwardableRef, group: str | MetricLevelGroup) -> int | None:
        resolved = await self._resolve(group)
        if resolved is None:
            return None
        current = await self.get_current_level(awardable, resolved)
        nxt = next_level_after(await store.get_group_levels(self.db, resolved.id), current)
        return nxt.xp_threshold if nxt is not None else None

    async def get_progress_percentage(self, awardable: AwardableRef, group: str | MetricLevelGroup) -> float:
        return (await self.get_level_info(awardable, group)).progress_percentage

    async def get_level_info(self, awardable: AwardableRef, group: str | MetricLevelGroup) -> LevelInfo:
        """Stored current level alongside a live recomputed total."""
        resolved = await self._resolve(group)
        if resolved is None:
            return LevelInfo()

        levels = await store.get_group_levels(self.db, resolved.id)
        total_xp = await self.get_total_xp(awardable, resolved)
        current = await self.get_current_level(awardable, resolved)
        nxt = next_level_after(levels, current)
        next_threshold = nxt.xp_threshold if nxt is not None else None
        return LevelInfo(
            current_level=current,
            total_xp=total_xp,
            next_level_threshold=next_threshold,
            progress_percentage=progress_percentage(total_xp, threshold_of(levels, current) or 0, next_threshold),
        )
