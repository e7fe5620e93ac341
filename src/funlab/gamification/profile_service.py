"""Profile lifecycle: lazy creation, opt-in/opt-out and counter repair."""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from funlab.db.models import Profile
from funlab.gamification import store
from funlab.gamification.achievement_service import has_achievement
from funlab.gamification.awardable import AwardableRef

logger = structlog.get_logger()

__all__ = [
    "get_profile",
    "get_or_create_profile",
    "opt_out",
    "opt_in",
    "is_opted_out",
    "recalculate_aggregations",
    "has_achievement",
]


async def get_profile(db: AsyncSession, awardable: AwardableRef) -> Profile | None:
    return await store.get_profile(db, awardable)


async def get_or_create_profile(db: AsyncSession, awardable: AwardableRef) -> Profile:
    return await store.get_or_create_profile(db, awardable)


async def is_opted_out(db: AsyncSession, awardable: AwardableRef) -> bool:
    """An awardable without a profile has not opted out."""
    profile = await store.get_profile(db, awardable)
    return profile is not None and profile.is_opted_out()


async def _set_opt_in(db: AsyncSession, awardable: AwardableRef, opted_in: bool) -> Profile:
    profile = await store.get_or_create_profile(db, awardable)
    if profile.is_opted_in != opted_in:
        profile.is_opted_in = opted_in
        await db.flush()
        logger.info("profile_opt_in_changed", awardable=str(awardable), is_opted_in=opted_in)
    return profile


async def opt_out(db: AsyncSession, awardable: AwardableRef) -> Profile:
    """Disable gamification; subsequent grants fail with OptedOutError."""
    return await _set_opt_in(db, awardable, False)


async def opt_in(db: AsyncSession, awardable: AwardableRef) -> Profile:
    return await _set_opt_in(db, awardable, True)


async def recalculate_aggregations(db: AsyncSession, awardable: AwardableRef) -> Profile | None:
    """Recompute the denormalised counters from the owned rows.

    Returns None when the awardable has no profile.
    """
    profile = await store.get_profile(db, awardable)
    if profile is None:
        return None

    profile.total_xp = await store.sum_profile_metric_xp(db, profile.id)
    profile.achievement_count = await store.count_achievement_grants(db, profile.id)
    profile.prize_count = await store.count_prize_grants(db, profile.id)
    await db.flush()

    logger.info(
        "profile_recalculated",
        awardable=str(awardable),
        total_xp=profile.total_xp,
        achievement_count=profile.achievement_count,
        prize_count=profile.prize_count,
    )
    return profile
