"""XP award recording: totals, validation order, lazy creation."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from funlab.db.models import Profile, ProfileMetric
from funlab.gamification import store
from funlab.gamification.awardable import AwardableRef
from funlab.gamification.errors import InvalidArgumentError, InvalidStateError, NotFoundError
from funlab.gamification.events import XpAwarded

ALICE = AwardableRef("User", 1)


async def _row_count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


class TestAwardXp:
    """XP lands on the profile metric and the profile total."""

    @pytest.mark.asyncio
    async def test_first_award_creates_rows(self, catalogue, engine):
        award = await engine.xp.award_xp(ALICE, "combat-xp", 30)

        assert award.profile_metric.total_xp == 30
        assert award.profile_metric.current_level == 1
        profile = await store.get_profile(catalogue, ALICE)
        assert profile.total_xp == 30
        assert profile.last_activity_at is not None

    @pytest.mark.asyncio
    async def test_totals_are_monotonic_sum_of_amounts(self, catalogue, engine):
        amounts = [5, 17, 1, 40, 3]
        seen = []
        for amount in amounts:
            award = await engine.xp.award_xp(ALICE, "combat-xp", amount)
            seen.append(award.profile_metric.total_xp)

        assert seen == sorted(seen)
        assert seen[-1] == sum(amounts)
        assert await _row_count(catalogue, ProfileMetric) == 1

    @pytest.mark.asyncio
    async def test_profile_total_spans_metrics(self, catalogue, engine):
        await engine.xp.award_xp(ALICE, "combat-xp", 20)
        await engine.xp.award_xp(ALICE, "crafting-xp", 7)

        profile = await store.get_profile(catalogue, ALICE)
        assert profile.total_xp == 27
        assert await _row_count(catalogue, ProfileMetric) == 2

    @pytest.mark.asyncio
    async def test_emits_xp_awarded(self, catalogue, engine, events):
        await engine.xp.award_xp(ALICE, "combat-xp", 12, reason="quest", source="game", meta={"quest": 4})

        awarded = [e for e in events if isinstance(e, XpAwarded)]
        assert len(awarded) == 1
        assert awarded[0].amount == 12
        assert awarded[0].metric_total_xp == 12
        assert awarded[0].profile_total_xp == 12
        assert awarded[0].meta == {"quest": 4}


class TestAwardXpValidation:
    """Every rejection happens before the first write."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_amount_rejected(self, catalogue, engine, amount):
        with pytest.raises(InvalidArgumentError):
            await engine.xp.award_xp(ALICE, "combat-xp", amount)
        assert await _row_count(catalogue, Profile) == 0

    @pytest.mark.asyncio
    async def test_unknown_metric(self, catalogue, engine):
        with pytest.raises(NotFoundError):
            await engine.xp.award_xp(ALICE, "nope-xp", 10)
        assert await _row_count(catalogue, Profile) == 0

    @pytest.mark.asyncio
    async def test_inactive_metric(self, catalogue, engine):
        with pytest.raises(InvalidStateError):
            await engine.xp.award_xp(ALICE, "legacy-xp", 10)
        assert await _row_count(catalogue, Profile) == 0
