"""Pure level evaluation and cascade planning.

Nothing in this module touches the store. The services load ladders and
holdings, call these functions to decide what changes, then apply the
result in a single write step.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class LadderEvaluation:
    """Outcome of comparing XP against a level ladder."""

    new_level: int | None
    unlocked: list[Any] = field(default_factory=list)

    @property
    def level_reached(self) -> bool:
        return self.new_level is not None


@dataclass(frozen=True)
class GrantEffect:
    """An achievement the cascade decided to grant."""

    achievement: Any
    level: Any
    reason: str
    meta: dict[str, Any] = field(default_factory=dict)


def _sorted(levels: Iterable[Any]) -> list[Any]:
    return sorted(levels, key=lambda lvl: lvl.level)


def evaluate_ladder(levels: Iterable[Any], total_xp: int, current_level: int) -> LadderEvaluation:
    """Find every level above ``current_level`` whose threshold ``total_xp`` meets.

    The threshold comparison is inclusive. A jump over several levels
    unlocks all of them, and the new level is the highest one unlocked.
    """
    unlocked = [
        lvl for lvl in _sorted(levels)
        if total_xp >= lvl.xp_threshold and lvl.level > current_level
    ]
    if not unlocked:
        return LadderEvaluation(new_level=None)
    return LadderEvaluation(new_level=max(lvl.level for lvl in unlocked), unlocked=unlocked)


def level_for_xp(levels: Iterable[Any], total_xp: int) -> int:
    """Live level implied by ``total_xp``, stopping at the first unreached level."""
    current = 1
    for lvl in _sorted(levels):
        if total_xp >= lvl.xp_threshold:
            current = lvl.level
        else:
            break
    return current


def weighted_total(members: Iterable[tuple[int, float]]) -> int:
    """Sum ``(xp, weight)`` pairs, truncating each weighted member before summing.

    >>> weighted_total([(37, 1.0), (10, 0.8)])
    45
    """
    return sum(int(xp * weight) for xp, weight in members)


def next_level_after(levels: Iterable[Any], current_level: int) -> Any | None:
    """Lowest level strictly above ``current_level``, or None at the top."""
    for lvl in _sorted(levels):
        if lvl.level > current_level:
            return lvl
    return None


def threshold_of(levels: Iterable[Any], level: int) -> int | None:
    for lvl in levels:
        if lvl.level == level:
            return lvl.xp_threshold
    return None


def progress_percentage(total_xp: int, current_threshold: int, next_threshold: int | None) -> float:
    """Percent of the way from the current level's threshold to the next one."""
    if next_threshold is None:
        return 100.0
    required = next_threshold - current_threshold
    if required <= 0:
        return 100.0
    progress = (total_xp - current_threshold) / required * 100
    return max(0.0, min(100.0, progress))


def plan_grants(
    unlocked: Sequence[Any],
    achievements_by_level: Mapping[int, Sequence[Any]],
    awardable_type: str,
    held_achievement_ids: set[int],
    *,
    scope: str,
    scope_id: int,
) -> list[GrantEffect]:
    """Decide which achievements attached to ``unlocked`` levels to grant.

    Skips inactive achievements, achievements restricted to another
    awardable type and achievements already held. An achievement attached
    to several unlocked levels is granted once, for the lowest of them.
    ``scope`` names the ladder owner ("metric" or "metric_level_group") for the grant
    metadata.
    """
    effects: list[GrantEffect] = []
    planned: set[int] = set()
    for lvl in unlocked:
        for achievement in achievements_by_level.get(lvl.id, ()):
            if not achievement.is_active:
                continue
            if achievement.awardable_type is not None and achievement.awardable_type != awardable_type:
                continue
            if achievement.id in held_achievement_ids or achievement.id in planned:
                continue
            planned.add(achievement.id)
            effects.append(
                GrantEffect(
                    achievement=achievement,
                    level=lvl,
                    reason=f"Reached level {lvl.level}: {lvl.name}",
                    meta={
                        f"{scope}_level_id": lvl.id,
                        f"{scope}_id": scope_id,
                        "level": lvl.level,
                    },
                )
            )
    return effects
