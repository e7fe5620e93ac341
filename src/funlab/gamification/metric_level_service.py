"""Metric level evaluation: stored level updates, reads and achievement cascade."""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from funlab.db.models import GamedMetric, Profile, ProfileMetric
from funlab.gamification import store
from funlab.gamification.achievement_service import AchievementService
from funlab.gamification.awardable import AwardableRef
from funlab.gamification.errors import FunLabError
from funlab.gamification.events import EventPublisher, LevelReached
from funlab.gamification.progression import (
    GrantEffect,
    evaluate_ladder,
    next_level_after,
    plan_grants,
    progress_percentage,
    threshold_of,
)
from funlab.gamification.results import AwardResult, ProgressionResult
from funlab.gamification.schemas import LevelInfo

logger = structlog.get_logger()

CASCADE_SOURCE = "metric-level-progression"


async def apply_grant_effects(
    achievements: AchievementService,
    awardable: AwardableRef,
    effects: list[GrantEffect],
    source: str,
) -> list[AwardResult]:
    """Grant each planned achievement; business refusals become failed results."""
    results: list[AwardResult] = []
    for effect in effects:
        try:
            grant = await achievements.grant(
                awardable,
                effect.achievement,
                reason=effect.reason,
                source=source,
                meta=effect.meta,
            )
        except FunLabError as exc:
            logger.info(
                "cascade_grant_skipped",
                achievement=effect.achievement.slug,
                awardable=str(awardable),
                reason=exc.reason.value,
            )
            results.append(AwardResult.from_error(exc, recipient=awardable, type="achievement"))
            continue
        results.append(AwardResult.ok(grant, recipient=awardable, type="achievement"))
    return results


class MetricLevelService:
    """Level checking and progression for a single GamedMetric."""

    def __init__(self, db: AsyncSession, achievements: AchievementService, publisher: EventPublisher) -> None:
        self.db = db
        self.achievements = achievements
        self.publisher = publisher

    async def check_progression(
        self, profile_metric: ProfileMetric, metric: GamedMetric, awardable: AwardableRef
    ) -> ProgressionResult:
        """Raise the stored level to the highest reached one and grant level achievements.

        ``profile_metric.total_xp`` must be a fresh post-increment read.
        """
        old_level = profile_metric.current_level
        levels = await store.get_metric_levels(self.db, metric.id)

        evaluation = evaluate_ladder(levels, profile_metric.total_xp, old_level)
        if not evaluation.level_reached:
            return ProgressionResult(level_reached=False)

        await store.raise_profile_metric_level(self.db, profile_metric, evaluation.new_level)
        logger.info(
            "level_reached",
            scope="metric",
            metric=metric.slug,
            awardable=str(awardable),
            old_level=old_level,
            new_level=evaluation.new_level,
        )
        await self.publisher.publish(self.db, LevelReached(
            awardable=awardable,
            scope="metric",
            slug=metric.slug,
            old_level=old_level,
            new_level=evaluation.new_level,
        ))

        by_level = await store.get_achievements_for_metric_levels(
            self.db, [lvl.id for lvl in evaluation.unlocked]
        )
        held = await store.get_held_achievement_ids(self.db, awardable)
        effects = plan_grants(
            evaluation.unlocked,
            by_level,
            awardable.type,
            held,
            scope="metric",
            scope_id=metric.id,
        )
        grants = await apply_grant_effects(self.achievements, awardable, effects, CASCADE_SOURCE)

        return ProgressionResult(
            level_reached=True,
            new_level=evaluation.new_level,
            levels_unlocked=evaluation.unlocked,
            grants=grants,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _resolve(self, metric: str | GamedMetric) -> GamedMetric | None:
        if isinstance(metric, GamedMetric):
            return metric
        return await store.get_metric_by_slug(self.db, metric)

    async def _profile_metric(self, awardable: AwardableRef, metric: GamedMetric) -> ProfileMetric | None:
        profile = await store.get_profile(self.db, awardable)
        if profile is None:
            return None
        return await store.get_profile_metric(self.db, profile.id, metric.id)

    async def has_reached_level(self, profile: Profile, metric_slug: str, level: int) -> bool:
        """Stored level first; falls back to the live threshold in case the cache lags."""
        metric = await store.get_metric_by_slug(self.db, metric_slug)
        if metric is None:
            return False

        profile_metric = await store.get_profile_metric(self.db, profile.id, metric.id)
        if profile_metric is None:
            return False

        if profile_metric.current_level >= level:
            return True

        levels = await store.get_metric_levels(self.db, metric.id)
        threshold = threshold_of(levels, level)
        if threshold is None:
            return False
        return profile_metric.total_xp >= threshold

    async def get_current_level(self, awardable: AwardableRef, metric: str | GamedMetric) -> int:
        resolved = await self._resolve(metric)
        if resolved is None:
            return 1
        profile_metric = await self._profile_metric(awardable, resolved)
        return profile_metric.current_level if profile_metric is not None else 1

    async def get_total_xp(self, awardable: AwardableRef, metric: str | GamedMetric) -> int:
        resolved = await self._resolve(metric)
        if resolved is None:
            return 0
        profile_metric = await self._profile_metric(awardable, resolved)
        return profile_metric.total_xp if profile_metric is not None else 0

    async def get_next_level_threshold(self, awardable: AwardableRef, metric: str | GamedMetric) -> int | None:
        """XP needed for the next level, or None at the top of the ladder."""
        resolved = await self._resolve(metric)
        if resolved is None:
            return None
        current = await self.get_current_level(awardable, resolved)
        nxt = next_level_after(await store.get_metric_levels(self.db, resolved.id), current)
        return nxt.xp_threshold if nxt is not None else None

    async def get_progress_percentage(self, awardable: AwardableRef, metric: str | GamedMetric) -> float:
        return (await self.get_level_info(awardable, metric)).progress_percentage

    async def get_level_info(self, awardable: AwardableRef, metric: str | GamedMetric) -> LevelInfo:
        resolved = await self._resolve(metric)
        if resolved is None:
            return LevelInfo()

        profile_metric = await self._profile_metric(awardable, resolved)
        if profile_metric is None:
            levels = await store.get_metric_levels(self.db, resolved.id)
            nxt = next_level_after(levels, 1)
            return LevelInfo(next_level_threshold=nxt.xp_threshold if nxt is not None else None)

        levels = await store.get_metric_levels(self.db, resolved.id)
        current = profile_metric.current_level
        nxt = next_level_after(levels, current)
        next_threshold = nxt.xp_threshold if nxt is not None else None
        return LevelInfo(
            current_level=current,
            total_xp=profile_metric.total_xp,
            next_level_threshold=next_threshold,
            progress_percentage=progress_percentage(
                profile_metric.total_xp,
                threshold_of(levels, current) or 0,
                next_threshold,
            ),
        )
