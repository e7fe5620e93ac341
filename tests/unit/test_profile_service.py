"""Profile lifecycle tests."""

from __future__ import annotations

import pytest
from sqlalchemy import update

from funlab.db.models import Profile
from funlab.gamification import profile_service, store
from funlab.gamification.awardable import AwardableRef

ALICE = AwardableRef("User", 1)


class TestProfiles:
    @pytest.mark.asyncio
    async def test_get_or_create_is_idempotent(self, db_session):
        first = await profile_service.get_or_create_profile(db_session, ALICE)
        second = await profile_service.get_or_create_profile(db_session, ALICE)

        assert first.id == second.id
        assert first.is_opted_in is True
        assert first.total_xp == 0

    @pytest.mark.asyncio
    async def test_missing_profile(self, db_session):
        assert await profile_service.get_profile(db_session, ALICE) is None
        assert await profile_service.is_opted_out(db_session, ALICE) is False

    @pytest.mark.asyncio
    async def test_opt_out_and_in(self, db_session):
        profile = await profile_service.opt_out(db_session, ALICE)
        assert profile.is_opted_out()
        assert await profile_service.is_opted_out(db_session, ALICE)

        profile = await profile_service.opt_in(db_session, ALICE)
        assert not profile.is_opted_out()


class TestRecalculateAggregations:
    """Counters are rebuilt from the owned rows."""

    @pytest.mark.asyncio
    async def test_repairs_drifted_counters(self, catalogue, engine):
        await engine.xp.award_xp(ALICE, "combat-xp", 150)
        await engine.xp.award_xp(ALICE, "crafting-xp", 20)
        await engine.grant("sticker").to(ALICE).save()

        profile = await store.get_profile(catalogue, ALICE)
        await catalogue.execute(
            update(Profile)
            .where(Profile.id == profile.id)
            .values(total_xp=0, achievement_count=0, prize_count=0)
        )

        profile = await profile_service.recalculate_aggregations(catalogue, ALICE)

        assert profile.total_xp == 170
        assert profile.achievement_count == 2
        assert profile.prize_count == 1

    @pytest.mark.asyncio
    async def test_no_profile(self, db_session):
        assert await profile_service.recalculate_aggregations(db_session, ALICE) is None
