"""Configuration entity constructors.

One upsert per entity kind, keyed by its natural key (slug, or parent plus
level number). Seed scripts can describe a whole catalogue as a list of
``ConfigEntity`` values and hand it to ``apply_config``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Union

import structlog
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from funlab.db.models import (
    Achievement,
    GamedMetric,
    MetricLevel,
    MetricLevelGroup,
    MetricLevelGroupLevel,
    MetricLevelGroupMetric,
    Prize,
    achievement_group_levels,
    achievement_metric_levels,
)
from funlab.gamification import store
from funlab.gamification.errors import InvalidArgumentError, NotFoundError
from funlab.gamification.prize_service import PrizeType

logger = structlog.get_logger()

_NON_SLUG = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    """Lower-case, collapse every run of non-alphanumerics to a single dash."""
    return _NON_SLUG.sub("-", value.strip().lower()).strip("-")


def headline(slug: str) -> str:
    """'combat-xp' -> 'Combat Xp'."""
    return " ".join(word.capitalize() for word in re.split(r"[-_\s]+", slug) if word)


def _require_slug(value: str | None, kind: str) -> str:
    if not value or not slugify(value):
        raise InvalidArgumentError(f"{kind} slug is required", {"slug": ["This field is required"]})
    return slugify(value)


def _require_level(level: int | None, xp: int | None) -> None:
    errors: dict[str, list[str]] = {}
    if level is None or level < 1:
        errors["level"] = ["Level number must be a positive integer"]
    if xp is None or xp < 0:
        errors["xp"] = ["XP threshold must be a non-negative integer"]
    if errors:
        raise InvalidArgumentError("Invalid level definition", errors)


def _check_ladder(ladder: Iterable[MetricLevel | MetricLevelGroupLevel], level: int, xp: int) -> None:
    """Thresholds must stay strictly increasing with level number."""
    for other in ladder:
        if other.level == level:
            continue
        if (other.level < level and other.xp_threshold >= xp) or (other.level > level and other.xp_threshold <= xp):
            raise InvalidArgumentError(
                f"XP threshold {xp} for level {level} breaks the increasing ladder "
                f"(level {other.level} is at {other.xp_threshold})",
                {"xp": ["Thresholds must increase strictly with level"]},
            )


async def _metric_or_raise(db: AsyncSession, slug: str | None) -> GamedMetric:
    if not slug:
        raise InvalidArgumentError("GamedMetric slug 'metric' is required", {"metric": ["This field is required"]})
    metric = await store.get_metric_by_slug(db, slugify(slug))
    if metric is None:
        raise NotFoundError(f"GamedMetric '{slug}' not found", {"metric": [f"Unknown metric '{slug}'"]})
    return metric


async def _group_or_raise(db: AsyncSession, slug: str | None) -> MetricLevelGroup:
    if not slug:
        raise InvalidArgumentError("MetricLevelGroup slug 'group' is required", {"group": ["This field is required"]})
    group = await store.get_group_by_slug(db, slugify(slug))
    if group is None:
        raise NotFoundError(f"MetricLevelGroup '{slug}' not found", {"group": [f"Unknown group '{slug}'"]})
    return group


async def _achievement_or_raise(db: AsyncSession, slug: str) -> Achievement:
    achievement = await store.get_achievement_by_slug(db, slugify(slug))
    if achievement is None:
        raise NotFoundError(f"Achievement '{slug}' not found", {"achievement": [f"Unknown achievement '{slug}'"]})
    return achievement


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


async def create_gamed_metric(
    db: AsyncSession,
    slug: str,
    name: str | None = None,
    description: str | None = None,
    icon: str | None = None,
    active: bool = True,
) -> GamedMetric:
    slug = _require_slug(slug, "GamedMetric")
    metric = await store.get_metric_by_slug(db, slug)
    if metric is None:
        metric = GamedMetric(slug=slug)
        db.add(metric)
    metric.name = name or headline(slug)
    metric.description = description
    metric.icon = icon
    metric.active = active
    await db.flush()
    logger.info("gamed_metric_saved", slug=slug)
    return metric


async def create_metric_level(
    db: AsyncSession,
    metric: str,
    level: int,
    xp: int,
    name: str | None = None,
    description: str | None = None,
) -> MetricLevel:
    _require_level(level, xp)
    gamed_metric = await _metric_or_raise(db, metric)
    ladder = await store.get_metric_levels(db, gamed_metric.id)
    _check_ladder(ladder, level, xp)

    row = next((lvl for lvl in ladder if lvl.level == level), None)
    if row is None:
        row = MetricLevel(gamed_metric_id=gamed_metric.id, level=level)
        db.add(row)
    row.xp_threshold = xp
    row.name = name or f"Level {level}"
    row.description = description
    await db.flush()
    logger.info("metric_level_saved", metric=gamed_metric.slug, level=level, xp_threshold=xp)
    return row


async def create_metric_level_group(
    db: AsyncSession,
    slug: str,
    name: str | None = None,
    description: str | None = None,
) -> MetricLevelGroup:
    slug = _require_slug(slug, "MetricLevelGroup")
    group = await store.get_group_by_slug(db, slug)
    if group is None:
        group = MetricLevelGroup(slug=slug)
        db.add(group)
    group.name = name or headline(slug)
    group.description = description
    await db.flush()
    logger.info("metric_level_group_saved", slug=slug)
    return group


async def add_metric_to_group(
    db: AsyncSession,
    group: str,
    metric: str,
    weight: float | None = None,
) -> MetricLevelGroupMetric:
    weight = 1.0 if weight is None else float(weight)
    if weight <= 0:
        raise InvalidArgumentError("Weight must be positive", {"weight": ["Must be greater than 0"]})

    level_group = await _group_or_raise(db, group)
    gamed_metric = await _metric_or_raise(db, metric)

    result = await db.execute(
        select(MetricLevelGroupMetric).where(
            MetricLevelGroupMetric.metric_level_group_id == level_group.id,
            MetricLevelGroupMetric.gamed_metric_id == gamed_metric.id,
        )
    )
    member = result.scalar_one_or_none()
    if member is None:
        member = MetricLevelGroupMetric(metric_level_group_id=level_group.id, gamed_metric_id=gamed_metric.id)
        db.add(member)
    member.weight = weight
    await db.flush()
    logger.info("group_metric_saved", group=level_group.slug, metric=gamed_metric.slug, weight=weight)
    return member


async def create_group_level(
    db: AsyncSession,
    group: str,
    level: int,
    xp: int,
    name: str | None = None,
    description: str | None = None,
) -> MetricLevelGroupLevel:
    _require_level(level, xp)
    level_group = await _group_or_raise(db, group)
    ladder = await store.get_group_levels(db, level_group.id)
    _check_ladder(ladder, level, xp)

    row = next((lvl for lvl in ladder if lvl.level == level), None)
    if row is None:
        row = MetricLevelGroupLevel(metric_level_group_id=level_group.id, level=level)
        db.add(row)
    row.xp_threshold = xp
    row.name = name or f"Level {level}"
    row.description = description
    await db.flush()
    logger.info("group_level_saved", group=level_group.slug, level=level, xp_threshold=xp)
    return row


async def create_achievement(
    db: AsyncSession,
    slug: str,
    name: str | None = None,
    description: str | None = None,
    icon: str | None = None,
    awardable_type: str | None = None,
    meta: dict[str, Any] | None = None,
    active: bool = True,
    sort_order: int = 0,
) -> Achievement:
    """Upsert an achievement. ``awardable_type`` restricts who may receive it."""
    slug = _require_slug(slug, "Achievement")
    achievement = await store.get_achievement_by_slug(db, slug)
    if achievement is None:
        achievement = Achievement(slug=slug)
        db.add(achievement)
    achievement.name = name or headline(slug)
    achievement.description = description
    achievement.icon = icon
    achievement.awardable_type = awardable_type
    achievement.meta = meta or None
    achievement.is_active = active
    achievement.sort_order = sort_order
    await db.flush()
    logger.info("achievement_saved", slug=slug, awardable_type=awardable_type)
    return achievement


async def create_prize(
    db: AsyncSession,
    slug: str,
    name: str | None = None,
    description: str | None = None,
    type: str | PrizeType = PrizeType.VIRTUAL,  # noqa: A002
    cost: int | float | Decimal = 0,
    inventory: int | None = None,
    meta: dict[str, Any] | None = None,
    active: bool = True,
    sort_order: int = 0,
) -> Prize:
    slug = _require_slug(slug, "Prize")
    try:
        prize_type = PrizeType(type)
    except ValueError:
        valid = ", ".join(t.value for t in PrizeType)
        raise InvalidArgumentError(f"Unknown prize type '{type}'", {"type": [f"Expected one of: {valid}"]}) from None
    if inventory is not None and inventory < 0:
        raise InvalidArgumentError("Inventory cannot be negative", {"inventory": ["Must be 0 or more"]})

    prize = await store.get_prize_by_slug(db, slug)
    if prize is None:
        prize = Prize(slug=slug)
        db.add(prize)
    prize.name = name or headline(slug)
    prize.description = description
    prize.type = prize_type.value
    prize.cost_in_points = Decimal(str(cost))
    prize.inventory_quantity = inventory
    prize.meta = meta or None
    prize.is_active = active
    prize.sort_order = sort_order
    await db.flush()
    logger.info("prize_saved", slug=slug, type=prize_type.value, inventory=inventory)
    return prize


async def attach_achievement_to_metric_level(
    db: AsyncSession, achievement: str, metric: str, level: int
) -> MetricLevel:
    """Auto-grant ``achievement`` when ``metric`` first reaches ``level``. Idempotent."""
    found = await _achievement_or_raise(db, achievement)
    gamed_metric = await _metric_or_raise(db, metric)
    row = next((lvl for lvl in await store.get_metric_levels(db, gamed_metric.id) if lvl.level == level), None)
    if row is None:
        raise NotFoundError(f"Level {level} of '{gamed_metric.slug}' not found", {"level": ["Unknown level"]})

    linked = await store.get_achievements_for_metric_levels(db, [row.id])
    if all(a.id != found.id for a in linked.get(row.id, [])):
        await db.execute(insert(achievement_metric_levels).values(achievement_id=found.id, metric_level_id=row.id))
        logger.info("achievement_attached", achievement=found.slug, metric=gamed_metric.slug, level=level)
    return row


async def attach_achievement_to_group_level(
    db: AsyncSession, achievement: str, group: str, level: int
) -> MetricLevelGroupLevel:
    """Auto-grant ``achievement`` when ``group`` first reaches ``level``. Idempotent."""
    found = await _achievement_or_raise(db, achievement)
    level_group = await _group_or_raise(db, group)
    row = next((lvl for lvl in await store.get_group_levels(db, level_group.id) if lvl.level == level), None)
    if row is None:
        raise NotFoundError(f"Level {level} of '{level_group.slug}' not found", {"level": ["Unknown level"]})

    linked = await store.get_achievements_for_group_levels(db, [row.id])
    if all(a.id != found.id for a in linked.get(row.id, [])):
        await db.execute(
            insert(achievement_group_levels).values(achievement_id=found.id, metric_level_group_level_id=row.id)
        )
        logger.info("achievement_attached", achievement=found.slug, group=level_group.slug, level=level)
    return row


# ---------------------------------------------------------------------------
# Declarative catalogue
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricConfig:
    slug: str
    name: str | None = None
    description: str | None = None
    icon: str | None = None
    active: bool = True


@dataclass(frozen=True)
class MetricLevelConfig:
    metric: str
    level: int
    xp: int
    name: str | None = None
    description: str | None = None
    achievements: tuple[str, ...] = ()


@dataclass(frozen=True)
class GroupConfig:
    slug: str
    name: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class GroupMetricConfig:
    group: str
    metric: str
    weight: float = 1.0


@dataclass(frozen=True)
class GroupLevelConfig:
    group: str
    level: int
    xp: int
    name: str | None = None
    description: str | None = None
    achievements: tuple[str, ...] = ()


@dataclass(frozen=True)
class AchievementConfig:
    slug: str
    name: str | None = None
    description: str | None = None
    icon: str | None = None
    awardable_type: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    active: bool = True
    sort_order: int = 0


@dataclass(frozen=True)
class PrizeConfig:
    slug: str
    name: str | None = None
    description: str | None = None
    type: str = PrizeType.VIRTUAL.value
    cost: int | float = 0
    inventory: int | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    active: bool = True
    sort_order: int = 0


ConfigEntity = Union[
    MetricConfig,
    MetricLevelConfig,
    GroupConfig,
    GroupMetricConfig,
    GroupLevelConfig,
    AchievementConfig,
    PrizeConfig,
]


async def _apply_one(db: AsyncSession, entity: ConfigEntity) -> Any:
    if isinstance(entity, MetricConfig):
        return await create_gamed_metric(db, entity.slug, entity.name, entity.description, entity.icon, entity.active)
    if isinstance(entity, MetricLevelConfig):
        row = await create_metric_level(db, entity.metric, entity.level, entity.xp, entity.name, entity.description)
        for slug in entity.achievements:
            await attach_achievement_to_metric_level(db, slug, entity.metric, entity.level)
        return row
    if isinstance(entity, GroupConfig):
        return await create_metric_level_group(db, entity.slug, entity.name, entity.description)
    if isinstance(entity, GroupMetricConfig):
        return await add_metric_to_group(db, entity.group, entity.metric, entity.weight)
    if isinstance(entity, GroupLevelConfig):
        row = await create_group_level(db, entity.group, entity.level, entity.xp, entity.name, entity.description)
        for slug in entity.achievements:
            await attach_achievement_to_group_level(db, slug, entity.group, entity.level)
        return row
    if isinstance(entity, AchievementConfig):
        return await create_achievement(
            db,
            entity.slug,
            entity.name,
            entity.description,
            entity.icon,
            entity.awardable_type,
            dict(entity.meta),
            entity.active,
            entity.sort_order,
        )
    if isinstance(entity, PrizeConfig):
        return await create_prize(
            db,
            entity.slug,
            entity.name,
            entity.description,
            entity.type,
            entity.cost,
            entity.inventory,
            dict(entity.meta),
            entity.active,
            entity.sort_order,
        )
    raise InvalidArgumentError(f"Unknown configuration entity {type(entity).__name__}")


async def apply_config(db: AsyncSession, entities: Iterable[ConfigEntity]) -> list[Any]:
    """Apply entities in order. Parents must precede the entities that reference them."""
    rows = [await _apply_one(db, entity) for entity in entities]
    logger.info("config_applied", count=len(rows))
    return rows
