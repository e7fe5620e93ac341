"""XP award recording with level and group cascades."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from funlab.db.models import GamedMetric, ProfileMetric
from funlab.gamification import store
from funlab.gamification.awardable import AwardableRef
from funlab.gamification.errors import InvalidArgumentError, InvalidStateError, NotFoundError
from funlab.gamification.events import EventPublisher, XpAwarded
from funlab.gamification.group_service import MetricLevelGroupService
from funlab.gamification.metric_level_service import MetricLevelService
from funlab.gamification.results import ProgressionResult

logger = structlog.get_logger()


@dataclass
class XpAward:
    """The updated profile metric plus what the cascade changed."""

    profile_metric: ProfileMetric
    metric: GamedMetric
    metric_progression: ProgressionResult
    group_progression: dict[str, ProgressionResult] = field(default_factory=dict)


class XpService:
    """Records XP against a GamedMetric and runs the level cascades."""

    def __init__(
        self,
        db: AsyncSession,
        publisher: EventPublisher,
        metric_levels: MetricLevelService,
        groups: MetricLevelGroupService,
    ) -> None:
        self.db = db
        self.publisher = publisher
        self.metric_levels = metric_levels
        self.groups = groups

    async def award_xp(
        self,
        awardable: AwardableRef,
        metric: str | GamedMetric,
        amount: int,
        reason: str | None = None,
        source: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> XpAward:
        """Award XP to a metric.

        All validation happens before the first write:
        1. amount must be a positive int
        2. the metric must exist and be active

        Then, strictly in order: profile total, profile metric total (fresh
        read after the atomic add), metric level check, and a level check for
        every group containing the metric.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidArgumentError(
                "XP amount must be a positive integer",
                {"amount": [f"Expected a positive integer, got {amount!r}"]},
            )

        if isinstance(metric, str):
            slug = metric
            found = await store.get_metric_by_slug(self.db, slug)
            if found is None:
                raise NotFoundError(f"Gamed metric '{slug}' not found", {"metric": [f"Unknown metric '{slug}'"]})
            metric = found

        if not metric.active:
            raise InvalidStateError(f"Gamed metric '{metric.slug}' is not active", {"metric": ["Metric is inactive"]})

        profile = await store.get_or_create_profile(self.db, awardable)
        profile_metric = await store.get_or_create_profile_metric(self.db, profile, metric)

        await store.increment_profile_xp(self.db, profile, amount)
        profile_metric = await store.increment_profile_metric_xp(self.db, profile_metric, amount)

        metric_progression = await self.metric_levels.check_progression(profile_metric, metric, awardable)
        group_progression = await self.groups.check_groups_for_metric(profile, metric.id, awardable)

        logger.info(
            "xp_awarded",
            metric=metric.slug,
            awardable=str(awardable),
            amount=amount,
            metric_total_xp=profile_metric.total_xp,
            metric_level=profile_metric.current_level,
            source=source,
        )
        await self.publisher.publish(self.db, XpAwarded(
            awardable=awardable,
            metric_slug=metric.slug,
            amount=amount,
            metric_total_xp=profile_metric.total_xp,
            metric_level=profile_metric.current_level,
            profile_total_xp=profile.total_xp,
            reason=reason,
            source=source,
            meta=meta or {},
        ))

        return XpAward(
            profile_metric=profile_metric,
            metric=metric,
            metric_progression=metric_progression,
            group_progression=group_progression,
        )
