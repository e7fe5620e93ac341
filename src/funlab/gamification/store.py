"""Entity store: lookups, lazy creation and atomic counter updates.

No business rules live here. Counters are bumped with single
``UPDATE ... SET x = x + n`` statements and re-read afterwards, so
concurrent awards never lose an increment and callers never evaluate a
stale total. Lazy creation runs inside a savepoint; losing the insert race
to a concurrent request falls back to reading the winner's row.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from funlab.db.models import (
    Achievement,
    AchievementGrant,
    GamedMetric,
    MetricLevel,
    MetricLevelGroup,
    MetricLevelGroupLevel,
    MetricLevelGroupMetric,
    Prize,
    PrizeGrant,
    Profile,
    ProfileMetric,
    ProfileMetricGroup,
    achievement_group_levels,
    achievement_metric_levels,
)
from funlab.gamification.awardable import AwardableRef

T = TypeVar("T")


async def _create_or_fetch(
    db: AsyncSession,
    build: Callable[[], T],
    fetch: Callable[[], Awaitable[T | None]],
) -> T:
    try:
        async with db.begin_nested():
            row = build()
            db.add(row)
    except IntegrityError:
        existing = await fetch()
        if existing is None:
            raise
        return existing
    return row


# ---------------------------------------------------------------------------
# Configuration lookups
# ---------------------------------------------------------------------------


async def get_metric_by_slug(db: AsyncSession, slug: str) -> GamedMetric | None:
    result = await db.execute(select(GamedMetric).where(GamedMetric.slug == slug))
    return result.scalar_one_or_none()


async def get_group_by_slug(db: AsyncSession, slug: str) -> MetricLevelGroup | None:
    result = await db.execute(select(MetricLevelGroup).where(MetricLevelGroup.slug == slug))
    return result.scalar_one_or_none()


async def get_achievement_by_slug(db: AsyncSession, slug: str) -> Achievement | None:
    result = await db.execute(select(Achievement).where(Achievement.slug == slug))
    return result.scalar_one_or_none()


async def get_prize_by_slug(db: AsyncSession, slug: str) -> Prize | None:
    result = await db.execute(select(Prize).where(Prize.slug == slug))
    return result.scalar_one_or_none()


async def get_metric_levels(db: AsyncSession, metric_id: int) -> list[MetricLevel]:
    """All levels of a metric, lowest first."""
    result = await db.execute(
        select(MetricLevel)
        .where(MetricLevel.gamed_metric_id == metric_id)
        .order_by(MetricLevel.level.asc())
    )
    return list(result.scalars().all())


async def get_group_levels(db: AsyncSession, group_id: int) -> list[MetricLevelGroupLevel]:
    """All levels of a group, lowest first."""
    result = await db.execute(
        select(MetricLevelGroupLevel)
        .where(MetricLevelGroupLevel.metric_level_group_id == group_id)
        .order_by(MetricLevelGroupLevel.level.asc())
    )
    return list(result.scalars().all())


async def get_group_members(db: AsyncSession, group_id: int) -> list[MetricLevelGroupMetric]:
    result = await db.execute(
        select(MetricLevelGroupMetric)
        .where(MetricLevelGroupMetric.metric_level_group_id == group_id)
        .order_by(MetricLevelGroupMetric.id.asc())
    )
    return list(result.scalars().all())


async def get_groups_containing_metric(db: AsyncSession, metric_id: int) -> list[MetricLevelGroup]:
    """Every group that has ``metric_id`` as a member."""
    result = await db.execute(
        select(MetricLevelGroup)
        .join(
            MetricLevelGroupMetric,
            MetricLevelGroupMetric.metric_level_group_id == MetricLevelGroup.id,
        )
        .where(MetricLevelGroupMetric.gamed_metric_id == metric_id)
        .order_by(MetricLevelGroup.id.asc())
    )
    return list(result.scalars().unique().all())


async def get_achievements_for_metric_levels(
    db: AsyncSession, level_ids: Sequence[int]
) -> dict[int, list[Achievement]]:
    """Achievements attached to each metric level, keyed by level id."""
    if not level_ids:
        return {}
    result = await db.execute(
        select(achievement_metric_levels.c.metric_level_id, Achievement)
        .join(Achievement, Achievement.id == achievement_metric_levels.c.achievement_id)
        .where(achievement_metric_levels.c.metric_level_id.in_(level_ids))
        .order_by(Achievement.sort_order.asc(), Achievement.id.asc())
    )
    by_level: dict[int, list[Achievement]] = defaultdict(list)
    for level_id, achievement in result.all():
        by_level[level_id].append(achievement)
    return dict(by_level)


async def get_achievements_for_group_levels(
    db: AsyncSession, level_ids: Sequence[int]
) -> dict[int, list[Achievement]]:
    """Achievements attached to each group level, keyed by level id."""
    if not level_ids:
        return {}
    result = await db.execute(
        select(achievement_group_levels.c.metric_level_group_level_id, Achievement)
        .join(Achievement, Achievement.id == achievement_group_levels.c.achievement_id)
        .where(achievement_group_levels.c.metric_level_group_level_id.in_(level_ids))
        .order_by(Achievement.sort_order.asc(), Achievement.id.asc())
    )
    by_level: dict[int, list[Achievement]] = defaultdict(list)
    for level_id, achievement in result.all():
        by_level[level_id].append(achievement)
    return dict(by_level)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


async def get_profile(db: AsyncSession, awardable: AwardableRef) -> Profile | None:
    result = await db.execute(
        select(Profile).where(
            Profile.awardable_type == awardable.type,
            Profile.awardable_id == awardable.id,
        )
    )
    return result.scalar_one_or_none()


async def get_or_create_profile(db: AsyncSession, awardable: AwardableRef) -> Profile:
    """Get or create the profile row for an awardable."""
    profile = await get_profile(db, awardable)
    if profile is not None:
        return profile
    return await _create_or_fetch(
        db,
        lambda: Profile(
            awardable_type=awardable.type,
            awardable_id=awardable.id,
            is_opted_in=True,
            total_xp=0,
            achievement_count=0,
            prize_count=0,
        ),
        lambda: get_profile(db, awardable),
    )


async def increment_profile_xp(db: AsyncSession, profile: Profile, amount: int) -> Profile:
    """Atomically add XP to the profile total and stamp activity."""
    await db.execute(
        update(Profile)
        .where(Profile.id == profile.id)
        .values(total_xp=Profile.total_xp + amount, last_activity_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.refresh(profile)
    return profile


async def increment_achievement_count(db: AsyncSession, profile: Profile) -> None:
    await db.execute(
        update(Profile)
        .where(Profile.id == profile.id)
        .values(achievement_count=Profile.achievement_count + 1)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(profile)


async def increment_prize_count(db: AsyncSession, profile: Profile) -> None:
    await db.execute(
        update(Profile)
        .where(Profile.id == profile.id)
        .values(prize_count=Profile.prize_count + 1)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(profile)


# ---------------------------------------------------------------------------
# Per-metric and per-group progress
# ---------------------------------------------------------------------------


async def get_profile_metric(db: AsyncSession, profile_id: int, metric_id: int) -> ProfileMetric | None:
    result = await db.execute(
        select(ProfileMetric).where(
            ProfileMetric.profile_id == profile_id,
            ProfileMetric.gamed_metric_id == metric_id,
        )
    )
    return result.scalar_one_or_none()


async def get_profile_metrics(db: AsyncSession, profile_id: int, metric_ids: Sequence[int]) -> dict[int, ProfileMetric]:
    """Profile metric rows keyed by metric id; absent metrics are omitted."""
    if not metric_ids:
        return {}
    result = await db.execute(
        select(ProfileMetric).where(
            ProfileMetric.profile_id == profile_id,
            ProfileMetric.gamed_metric_id.in_(metric_ids),
        )
    )
    return {pm.gamed_metric_id: pm for pm in result.scalars().all()}


async def get_or_create_profile_metric(db: AsyncSession, profile: Profile, metric: GamedMetric) -> ProfileMetric:
    """Get or create the (profile, metric) row with 0 XP at level 1."""
    existing = await get_profile_metric(db, profile.id, metric.id)
    if existing is not None:
        return existing
    return await _create_or_fetch(
        db,
        lambda: ProfileMetric(
            profile_id=profile.id,
            gamed_metric_id=metric.id,
            total_xp=0,
            current_level=1,
            updated_at=datetime.now(timezone.utc),
        ),
        lambda: get_profile_metric(db, profile.id, metric.id),
    )


async def increment_profile_metric_xp(db: AsyncSession, profile_metric: ProfileMetric, amount: int) -> ProfileMetric:
    """Atomically add XP to a profile metric and return the fresh row."""
    await db.execute(
        update(ProfileMetric)
        .where(ProfileMetric.id == profile_metric.id)
        .values(total_xp=ProfileMetric.total_xp + amount, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.refresh(profile_metric)
    return profile_metric


async def raise_profile_metric_level(db: AsyncSession, profile_metric: ProfileMetric, new_level: int) -> bool:
    """Store ``new_level`` unless a concurrent writer already stored one at least as high."""
    result = await db.execute(
        update(ProfileMetric)
        .where(ProfileMetric.id == profile_metric.id, ProfileMetric.current_level < new_level)
        .values(current_level=new_level, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.refresh(profile_metric)
    return result.rowcount > 0


async def get_profile_metric_group(db: AsyncSession, profile_id: int, group_id: int) -> ProfileMetricGroup | None:
    result = await db.execute(
        select(ProfileMetricGroup).where(
            ProfileMetricGroup.profile_id == profile_id,
            ProfileMetricGroup.metric_level_group_id == group_id,
        )
    )
    return result.scalar_one_or_none()


async def lock_profile_metric_group(db: AsyncSession, profile_metric_group: ProfileMetricGroup) -> ProfileMetricGroup:
    """Re-read the row under SELECT ... FOR UPDATE (a no-op lock on SQLite)."""
    result = await db.execute(
        select(ProfileMetricGroup)
        .where(ProfileMetricGroup.id == profile_metric_group.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def get_or_create_profile_metric_group(
    db: AsyncSession, profile: Profile, group: MetricLevelGroup
) -> ProfileMetricGroup:
    """Get or create the (profile, group) row at level 1."""
    existing = await get_profile_metric_group(db, profile.id, group.id)
    if existing is not None:
        return existing
    return await _create_or_fetch(
        db,
        lambda: ProfileMetricGroup(
            profile_id=profile.id,
            metric_level_group_id=group.id,
            current_level=1,
            updated_at=datetime.now(timezone.utc),
        ),
        lambda: get_profile_metric_group(db, profile.id, group.id),
    )


async def raise_profile_metric_group_level(
    db: AsyncSession, profile_metric_group: ProfileMetricGroup, new_level: int
) -> bool:
    """Store ``new_level`` unless a concurrent writer already stored one at least as high."""
    result = await db.execute(
        update(ProfileMetricGroup)
        .where(ProfileMetricGroup.id == profile_metric_group.id, ProfileMetricGroup.current_level < new_level)
        .values(current_level=new_level, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.refresh(profile_metric_group)
    return result.rowcount > 0


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------


async def get_achievement_grant(
    db: AsyncSession, achievement_id: int, awardable: AwardableRef
) -> AchievementGrant | None:
    result = await db.execute(
        select(AchievementGrant).where(
            AchievementGrant.achievement_id == achievement_id,
            AchievementGrant.awardable_type == awardable.type,
            AchievementGrant.awardable_id == awardable.id,
        )
    )
    return result.scalar_one_or_none()


async def get_held_achievement_ids(db: AsyncSession, awardable: AwardableRef) -> set[int]:
    result = await db.execute(
        select(AchievementGrant.achievement_id).where(
            AchievementGrant.awardable_type == awardable.type,
            AchievementGrant.awardable_id == awardable.id,
        )
    )
    return set(result.scalars().all())


async def count_active_prize_grants(db: AsyncSession, prize_id: int) -> int:
    """Grants that still consume inventory (everything except cancelled)."""
    result = await db.execute(
        select(func.count(PrizeGrant.id)).where(
            PrizeGrant.prize_id == prize_id,
            PrizeGrant.status != "cancelled",
        )
    )
    return int(result.scalar_one())


# ---------------------------------------------------------------------------
# Leaderboards
# ---------------------------------------------------------------------------

LEADERBOARD_COLUMNS = {
    "xp": Profile.total_xp,
    "achievements": Profile.achievement_count,
    "prizes": Profile.prize_count,
}


async def top_profiles(
    db: AsyncSession,
    *,
    by: str = "xp",
    metric: str | None = None,
    awardable_type: str | None = None,
    exclude_opted_out: bool = True,
    limit: int = 10,
) -> list[tuple[Profile, int]]:
    """Highest-scoring profiles with their scores, best first.

    With ``metric`` the score is that metric's XP and profiles that never
    earned it are left out. Ties rank the older profile first.
    """
    if metric is not None:
        score = ProfileMetric.total_xp
        stmt = (
            select(Profile, score)
            .join(ProfileMetric, ProfileMetric.profile_id == Profile.id)
            .join(GamedMetric, GamedMetric.id == ProfileMetric.gamed_metric_id)
            .where(GamedMetric.slug == metric)
        )
    else:
        score = LEADERBOARD_COLUMNS[by]
        stmt = select(Profile, score)

    if awardable_type is not None:
        stmt = stmt.where(Profile.awardable_type == awardable_type)
    if exclude_opted_out:
        stmt = stmt.where(Profile.is_opted_in.is_(True))

    result = await db.execute(stmt.order_by(score.desc(), Profile.id).limit(limit))
    return [(profile, int(value)) for profile, value in result.all()]


# ---------------------------------------------------------------------------
# Aggregation repair
# ---------------------------------------------------------------------------


async def sum_profile_metric_xp(db: AsyncSession, profile_id: int) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(ProfileMetric.total_xp), 0)).where(ProfileMetric.profile_id == profile_id)
    )
    return int(result.scalar_one())


async def count_achievement_grants(db: AsyncSession, profile_id: int) -> int:
    result = await db.execute(
        select(func.count(AchievementGrant.id)).where(AchievementGrant.profile_id == profile_id)
    )
    return int(result.scalar_one())


async def count_prize_grants(db: AsyncSession, profile_id: int) -> int:
    result = await db.execute(select(func.count(PrizeGrant.id)).where(PrizeGrant.profile_id == profile_id))
    return int(result.scalar_one())
