"""Pure level evaluation tests: no database involved."""

from dataclasses import dataclass, field

from funlab.gamification.progression import (
    evaluate_ladder,
    level_for_xp,
    next_level_after,
    plan_grants,
    progress_percentage,
    threshold_of,
    weighted_total,
)


@dataclass
class Level:
    id: int
    level: int
    xp_threshold: int
    name: str = ""


@dataclass
class Ach:
    id: int
    slug: str
    is_active: bool = True
    awardable_type: str | None = None
    meta: dict = field(default_factory=dict)


LADDER = [Level(1, 1, 0, "Recruit"), Level(2, 2, 100, "Soldier"), Level(3, 3, 500, "Veteran")]


class TestEvaluateLadder:
    """Highest reached level wins; all skipped levels are unlocked."""

    def test_jump_skips_straight_to_highest(self):
        result = evaluate_ladder(LADDER, 600, current_level=1)
        assert result.level_reached
        assert result.new_level == 3
        assert [lvl.level for lvl in result.unlocked] == [2, 3]

    def test_threshold_is_inclusive(self):
        result = evaluate_ladder(LADDER, 100, current_level=1)
        assert result.new_level == 2

    def test_one_below_threshold_stays(self):
        result = evaluate_ladder(LADDER, 99, current_level=1)
        assert not result.level_reached
        assert result.unlocked == []

    def test_current_level_not_reapplied(self):
        result = evaluate_ladder(LADDER, 150, current_level=2)
        assert not result.level_reached

    def test_empty_ladder(self):
        assert evaluate_ladder([], 10_000, current_level=1).new_level is None

    def test_unsorted_input(self):
        result = evaluate_ladder(list(reversed(LADDER)), 600, current_level=1)
        assert [lvl.level for lvl in result.unlocked] == [2, 3]


class TestLevelForXp:
    def test_zero_xp_is_level_one(self):
        assert level_for_xp(LADDER, 0) == 1

    def test_mid_ladder(self):
        assert level_for_xp(LADDER, 499) == 2

    def test_top(self):
        assert level_for_xp(LADDER, 10_000) == 3

    def test_no_levels(self):
        assert level_for_xp([], 500) == 1


class TestWeightedTotal:
    """Each member is truncated before the sum."""

    def test_truncates_per_member(self):
        # int(0.8 * 47) would be 37
        assert weighted_total([(37, 1.0), (10, 0.8)]) == 45

    def test_fractional_members_drop_to_zero(self):
        assert weighted_total([(1, 0.5), (1, 0.5)]) == 0

    def test_empty(self):
        assert weighted_total([]) == 0


class TestNextLevelAndThreshold:
    def test_next_level(self):
        assert next_level_after(LADDER, 1).level == 2
        assert next_level_after(LADDER, 3) is None

    def test_threshold_of(self):
        assert threshold_of(LADDER, 3) == 500
        assert threshold_of(LADDER, 9) is None


class TestProgressPercentage:
    def test_halfway(self):
        assert progress_percentage(300, 100, 500) == 50.0

    def test_top_of_ladder(self):
        assert progress_percentage(9_999, 500, None) == 100.0

    def test_non_positive_span(self):
        assert progress_percentage(10, 100, 100) == 100.0

    def test_clamped_to_zero(self):
        assert progress_percentage(50, 100, 500) == 0.0

    def test_clamped_to_hundred(self):
        assert progress_percentage(900, 100, 500) == 100.0


class TestPlanGrants:
    """Cascade planning skips inactive, mismatched and held achievements."""

    def test_grants_each_unlocked_level(self):
        novice, veteran = Ach(10, "novice"), Ach(11, "veteran")
        effects = plan_grants(
            LADDER[1:], {2: [novice], 3: [veteran]}, "User", set(), scope="metric", scope_id=7
        )
        assert [e.achievement.slug for e in effects] == ["novice", "veteran"]
        assert effects[0].reason == "Reached level 2: Soldier"
        assert effects[1].meta == {"metric_level_id": 3, "metric_id": 7, "level": 3}

    def test_skips_inactive(self):
        effects = plan_grants(LADDER[1:2], {2: [Ach(10, "x", is_active=False)]}, "User", set(), scope="metric", scope_id=1)
        assert effects == []

    def test_skips_type_mismatch(self):
        effects = plan_grants(
            LADDER[1:2], {2: [Ach(10, "team-only", awardable_type="Team")]}, "User", set(), scope="metric", scope_id=1
        )
        assert effects == []

    def test_matching_type_restriction_kept(self):
        effects = plan_grants(
            LADDER[1:2], {2: [Ach(10, "team-only", awardable_type="Team")]}, "Team", set(), scope="metric", scope_id=1
        )
        assert len(effects) == 1

    def test_skips_held(self):
        effects = plan_grants(LADDER[1:2], {2: [Ach(10, "x")]}, "User", {10}, scope="metric", scope_id=1)
        assert effects == []

    def test_same_achievement_on_two_levels_planned_once(self):
        shared = Ach(10, "shared")
        effects = plan_grants(LADDER[1:], {2: [shared], 3: [shared]}, "User", set(), scope="metric", scope_id=1)
        assert len(effects) == 1
        assert effects[0].level.level == 2
