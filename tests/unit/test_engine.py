"""Award engine builders, level checks and strategy dispatch."""

from __future__ import annotations

import pytest

from funlab.db.models import AchievementGrant, PrizeGrant, ProfileMetric
from funlab.gamification import profile_service
from funlab.gamification.awardable import AwardableRef
from funlab.gamification.engine import AwardEngine
from funlab.gamification.errors import FailureReason, InvalidArgumentError
from funlab.gamification.events import AwardFailed, XpAwarded
from funlab.gamification.validation import ValidationOutcome


class TestAwardBuilder:
    """award(slug).to(x).amount(n).save()"""

    @pytest.mark.asyncio
    async def test_award_success(self, catalogue, engine, user):
        result = await (
            engine.award("combat-xp").to(user).amount(150).because("boss").from_("game").with_meta({"boss": 3}).save()
        )

        assert result.success
        assert result.type == "xp"
        assert isinstance(result.award, ProfileMetric)
        assert result.award.total_xp == 150
        assert result.recipient == AwardableRef("User", 1)
        assert result.meta["metric_level"] == 2
        assert result.meta["metric_level_reached"] is True
        assert result.meta["group_levels_reached"] == ["fighter-track", "total-player-level"]
        assert len(result.meta["achievements_granted"]) == 2

    @pytest.mark.asyncio
    async def test_for_sets_reason(self, catalogue, engine, user, events):
        result = await engine.award("crafting-xp").to(user).amount(5).for_("daily quest").save()

        assert result.success
        awarded = [e for e in events if isinstance(e, XpAwarded)]
        assert [e.reason for e in awarded] == ["daily quest"]

    @pytest.mark.asyncio
    async def test_missing_recipient_raises(self, catalogue, engine):
        with pytest.raises(InvalidArgumentError):
            await engine.award("combat-xp").amount(10).save()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -1])
    async def test_non_positive_amount_raises(self, catalogue, engine, user, amount):
        with pytest.raises(InvalidArgumentError):
            await engine.award("combat-xp").to(user).amount(amount).save()

    @pytest.mark.asyncio
    async def test_amount_not_set_raises(self, catalogue, engine, user):
        with pytest.raises(InvalidArgumentError):
            await engine.award("combat-xp").to(user).save()

    @pytest.mark.asyncio
    async def test_unknown_metric_is_failure_result(self, catalogue, engine, user, events):
        result = await engine.award("nope-xp").to(user).amount(10).save()

        assert result.failed
        assert result.reason is FailureReason.NOT_FOUND
        assert result.has_error("metric")
        failed = [e for e in events if isinstance(e, AwardFailed)]
        assert len(failed) == 1
        assert failed[0].failure_reason == "not_found"

    @pytest.mark.asyncio
    async def test_inactive_metric_is_failure_result(self, catalogue, engine, user):
        result = await engine.award("legacy-xp").to(user).amount(10).save()
        assert result.reason is FailureReason.INVALID_STATE

    @pytest.mark.asyncio
    async def test_recipient_without_id(self, catalogue, engine):
        class Anonymous:
            id = None

        with pytest.raises(InvalidArgumentError):
            engine.award("combat-xp").to(Anonymous())


class TestGrantBuilder:
    """grant(slug) dispatches to achievements first, then prizes."""

    @pytest.mark.asyncio
    async def test_grants_achievement(self, catalogue, engine, user):
        result = await engine.grant("first-login").to(user).because("welcome").save()

        assert result.success
        assert result.type == "achievement"
        assert isinstance(result.award, AchievementGrant)
        assert await engine.has_achievement(user, "first-login")

    @pytest.mark.asyncio
    async def test_grants_prize(self, catalogue, engine, user):
        result = await engine.grant("sticker").to(user).save()

        assert result.success
        assert result.type == "prize"
        assert isinstance(result.award, PrizeGrant)

    @pytest.mark.asyncio
    async def test_unknown_slug(self, catalogue, engine, user):
        result = await engine.grant("mystery").to(user).save()

        assert result.failed
        assert result.reason is FailureReason.NOT_FOUND
        assert "mystery" in result.message

    @pytest.mark.asyncio
    async def test_duplicate_achievement(self, catalogue, engine, user):
        await engine.grant("first-login").to(user).save()
        result = await engine.grant("first-login").to(user).save()

        assert result.reason is FailureReason.ALREADY_GRANTED
        profile = await engine.profile(user)
        assert profile.achievement_count == 1

    @pytest.mark.asyncio
    async def test_opted_out(self, catalogue, engine, user):
        await profile_service.opt_out(catalogue, AwardableRef.of(user))

        result = await engine.grant("first-login").to(user).save()
        assert result.reason is FailureReason.OPTED_OUT

    @pytest.mark.asyncio
    async def test_missing_recipient_raises(self, catalogue, engine):
        with pytest.raises(InvalidArgumentError):
            await engine.grant("first-login").save()

    @pytest.mark.asyncio
    async def test_custom_strategy(self, catalogue, engine, user):
        class BadgeStrategy:
            granted: list[str] = []

            async def owns(self, slug):
                return slug.startswith("badge:")

            async def grant(self, awardable, slug, reason, source, meta):
                self.granted.append(slug)
                return slug

        strategy = BadgeStrategy()
        engine.register_strategy("badge", strategy)

        result = await engine.grant("badge:gold").to(user).save()

        assert result.success
        assert result.type == "badge"
        assert strategy.granted == ["badge:gold"]


class TestValidationSteps:
    """Custom steps run before builder awards."""

    @pytest.mark.asyncio
    async def test_rejecting_step_blocks_award(self, catalogue, publisher, settings, user, events):
        def no_weekend_bonus(context):
            if context.source == "weekend":
                return ValidationOutcome.reject("No weekend bonus", {"source": ["Blocked"]})
            return None

        engine = AwardEngine(catalogue, publisher=publisher, settings=settings, validators=[no_weekend_bonus])

        result = await engine.award("combat-xp").to(user).amount(10).from_("weekend").save()

        assert result.failed
        assert result.reason is FailureReason.REJECTED
        assert result.first_error() == "Blocked"
        assert await profile_service.get_profile(catalogue, AwardableRef.of(user)) is None
        assert any(isinstance(e, AwardFailed) for e in events)

    @pytest.mark.asyncio
    async def test_step_sees_grant_kind(self, catalogue, publisher, settings, user):
        seen = []
        engine = AwardEngine(catalogue, publisher=publisher, settings=settings, validators=[seen.append])

        await engine.grant("sticker").to(user).save()

        assert [(c.award_type, c.slug) for c in seen] == [("prize", "sticker")]

    @pytest.mark.asyncio
    async def test_max_xp_setting(self, catalogue, publisher, settings, user):
        capped = settings.model_copy(update={"max_xp_per_award": 100})
        engine = AwardEngine(catalogue, publisher=publisher, settings=capped)

        assert (await engine.award("combat-xp").to(user).amount(100).save()).success
        result = await engine.award("combat-xp").to(user).amount(101).save()
        assert result.reason is FailureReason.REJECTED

    @pytest.mark.asyncio
    async def test_cascade_grants_skip_validation(self, catalogue, publisher, settings, user):
        def reject_achievements(context):
            if context.award_type == "achievement":
                return ValidationOutcome.reject("No achievements today")
            return None

        engine = AwardEngine(catalogue, publisher=publisher, settings=settings, validators=[reject_achievements])

        result = await engine.award("combat-xp").to(user).amount(150).save()

        assert result.success
        assert await engine.has_achievement(user, "combat-novice")


class TestHasLevel:
    """Exactly one of metric or group must be given."""

    @pytest.mark.asyncio
    async def test_neither_raises(self, catalogue, engine, user):
        with pytest.raises(InvalidArgumentError):
            await engine.has_level(user, 2)

    @pytest.mark.asyncio
    async def test_both_raises(self, catalogue, engine, user):
        with pytest.raises(InvalidArgumentError):
            await engine.has_level(user, 2, metric="combat-xp", group="fighter-track")

    @pytest.mark.asyncio
    async def test_metric_level(self, catalogue, engine, user):
        await engine.award("combat-xp").to(user).amount(150).save()

        assert await engine.has_level(user, 2, metric="combat-xp")
        assert not await engine.has_level(user, 3, metric="combat-xp")

    @pytest.mark.asyncio
    async def test_group_level(self, catalogue, engine, user):
        await engine.award("combat-xp").to(user).amount(150).save()

        assert await engine.has_level(user, 2, group="fighter-track")
        assert not await engine.has_level(user, 3, group="total-player-level")

    @pytest.mark.asyncio
    async def test_group_live_fallback_without_stored_row(self, catalogue, engine, user):
        await engine.award("crafting-xp").to(user).amount(1).save()
        assert await engine.has_level(user, 1, group="fighter-track")

    @pytest.mark.asyncio
    async def test_metric_without_profile(self, catalogue, engine, user):
        assert not await engine.has_level(user, 1, metric="combat-xp")
        assert await profile_service.get_profile(catalogue, AwardableRef.of(user)) is not None

    @pytest.mark.asyncio
    async def test_group_base_level_without_profile(self, catalogue, engine, user):
        """The profile is created on first check and level 1 has a zero threshold."""
        assert await engine.has_level(user, 1, group="total-player-level")
        assert not await engine.has_level(user, 2, group="total-player-level")

    @pytest.mark.asyncio
    async def test_unknown_level(self, catalogue, engine, user):
        await engine.award("combat-xp").to(user).amount(10).save()
        assert not await engine.has_level(user, 9, metric="combat-xp")


class TestDirectAward:
    @pytest.mark.asyncio
    async def test_award_xp_returns_snapshot(self, catalogue, engine, user):
        snapshot = await engine.award_xp(user, "combat-xp", 120)

        assert snapshot.total_xp == 120
        assert snapshot.current_level == 2
