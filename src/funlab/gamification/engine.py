"""Award engine: the entry point external callers use.

    engine = AwardEngine(db, publisher)
    result = await engine.award("combat-xp").to(user).amount(50).because("boss").save()
    result = await engine.grant("first-login").to(user).save()
    await engine.has_level(user, 3, metric="combat-xp")

Builders raise ``InvalidArgumentError`` for caller bugs (no recipient,
non-positive amount). Every other refusal comes back as a failed
``AwardResult`` and an ``AwardFailed`` event.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Protocol, Self

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from funlab.config import Settings, get_settings
from funlab.core.logging import bind_awardable, clear_awardable
from funlab.db.models import Profile
from funlab.gamification import store
from funlab.gamification.achievement_service import AchievementService, has_achievement
from funlab.gamification.awardable import AwardableRef
from funlab.gamification.errors import FailureReason, FunLabError, InvalidArgumentError, NotFoundError
from funlab.gamification.events import AwardFailed, EventPublisher, Listener
from funlab.gamification.group_service import MetricLevelGroupService
from funlab.gamification.metric_level_service import MetricLevelService
from funlab.gamification.prize_service import PrizeService
from funlab.gamification.results import AwardResult
from funlab.gamification.schemas import LeaderboardEntry, LevelInfo, ProfileMetricSnapshot, ProfileSnapshot
from funlab.gamification.validation import (
    ValidationContext,
    ValidationPipeline,
    ValidationStep,
    max_amount_step,
)
from funlab.gamification.xp_service import XpAward, XpService

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Grant strategies
# ---------------------------------------------------------------------------


class GrantStrategy(Protocol):
    async def owns(self, slug: str) -> bool: ...

    async def grant(
        self,
        awardable: AwardableRef,
        slug: str,
        reason: str | None,
        source: str | None,
        meta: dict[str, Any],
    ) -> Any: ...


class AchievementStrategy:
    def __init__(self, service: AchievementService) -> None:
        self.service = service

    async def owns(self, slug: str) -> bool:
        return await self.service.exists(slug)

    async def grant(self, awardable, slug, reason, source, meta):  # type: ignore[no-untyped-def]
        return await self.service.grant(awardable, slug, reason=reason, source=source, meta=meta)


class PrizeStrategy:
    def __init__(self, service: PrizeService) -> None:
        self.service = service

    async def owns(self, slug: str) -> bool:
        return await self.service.exists(slug)

    async def grant(self, awardable, slug, reason, source, meta):  # type: ignore[no-untyped-def]
        return await self.service.grant(awardable, slug, reason=reason, source=source, meta=meta)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


class _Builder:
    award_type = "award"

    def __init__(self, engine: AwardEngine, slug: str) -> None:
        self.engine = engine
        self.slug = slug
        self._recipient: AwardableRef | None = None
        self._reason: str | None = None
        self._source: str | None = None
        self._meta: dict[str, Any] = {}

    def to(self, recipient: Any) -> Self:
        self._recipient = AwardableRef.of(recipient)
        return self

    def because(self, reason: str) -> Self:
        self._reason = reason
        return self

    def for_(self, reason: str) -> Self:
        return self.because(reason)

    def from_(self, source: str) -> Self:
        self._source = source
        return self

    def with_meta(self, meta: dict[str, Any]) -> Self:
        self._meta = dict(meta)
        return self

    def _require_recipient(self) -> AwardableRef:
        if self._recipient is None:
            raise InvalidArgumentError(
                "Recipient is required. Use .to(recipient) to set the recipient.",
                {"recipient": ["This field is required"]},
            )
        return self._recipient


class AwardXpBuilder(_Builder):
    """award(metric_slug).to(x).amount(n).because(r).from_(s).with_meta(m).save()"""

    award_type = "xp"

    def __init__(self, engine: AwardEngine, slug: str) -> None:
        super().__init__(engine, slug)
        self._amount = 0

    def amount(self, amount: int) -> Self:
        self._amount = amount
        return self

    async def save(self) -> AwardResult:
        recipient = self._require_recipient()
        if isinstance(self._amount, bool) or not isinstance(self._amount, int) or self._amount <= 0:
            raise InvalidArgumentError(
                "Amount must be greater than 0. Use .amount(50) to set the XP amount.",
                {"amount": ["Must be greater than 0"]},
            )

        bind_awardable(recipient.type, recipient.id)
        try:
            rejected = await self.engine._run_validation(ValidationContext(
                awardable=recipient,
                award_type=self.award_type,
                amount=self._amount,
                reason=self._reason,
                source=self._source,
                meta=self._meta,
                slug=self.slug,
            ))
            if rejected is not None:
                return rejected

            try:
                award = await self.engine.xp.award_xp(
                    recipient, self.slug, self._amount, self._reason, self._source, self._meta
                )
            except InvalidArgumentError:
                raise
            except FunLabError as exc:
                return await self.engine._fail(exc, recipient, self.award_type, self.slug)

            return AwardResult.ok(
                award.profile_metric,
                message=f"Awarded {self._amount} XP to '{self.slug}'",
                recipient=recipient,
                type=self.award_type,
                meta=_progression_meta(award),
            )
        finally:
            clear_awardable()

    grant = save


class GrantBuilder(_Builder):
    """grant(slug).to(x).because(r).from_(s).with_meta(m).save()

    The slug is offered to each grant strategy in order (achievements before
    prizes by default); the first that owns it performs the grant.
    """

    award_type = "grant"

    async def save(self) -> AwardResult:
        recipient = self._require_recipient()

        bind_awardable(recipient.type, recipient.id)
        try:
            kind, strategy = await self.engine._detect_strategy(self.slug)
            if strategy is None:
                return await self.engine._fail(
                    NotFoundError(
                        f"No Achievement or Prize found with slug '{self.slug}'",
                        {"slug": [f"Unknown slug '{self.slug}'"]},
                    ),
                    recipient,
                    self.award_type,
                    self.slug,
                )

            rejected = await self.engine._run_validation(ValidationContext(
                awardable=recipient,
                award_type=kind,
                reason=self._reason,
                source=self._source,
                meta=self._meta,
                slug=self.slug,
            ))
            if rejected is not None:
                return rejected

            try:
                grant = await strategy.grant(recipient, self.slug, self._reason, self._source, self._meta)
            except InvalidArgumentError:
                raise
            except FunLabError as exc:
                return await self.engine._fail(exc, recipient, kind, self.slug)

            return AwardResult.ok(grant, message=f"Granted {kind} '{self.slug}'", recipient=recipient, type=kind)
        finally:
            clear_awardable()

    grant = save


def _progression_meta(award: XpAward) -> dict[str, Any]:
    return {
        "metric_level_reached": award.metric_progression.level_reached,
        "metric_level": award.profile_metric.current_level,
        "group_levels_reached": sorted(
            slug for slug, result in award.group_progression.items() if result.level_reached
        ),
        "achievements_granted": [
            grant.award.id
            for result in (award.metric_progression, *award.group_progression.values())
            for grant in result.grants
            if grant.success
        ],
    }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class AwardEngine:
    """Wires the services for one session and exposes the award/grant/level API."""

    def __init__(
        self,
        db: AsyncSession,
        publisher: EventPublisher | None = None,
        settings: Settings | None = None,
        validators: Iterable[ValidationStep] = (),
        strategies: Mapping[str, GrantStrategy] | None = None,
        listeners: Iterable[Listener] = (),
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()

        if publisher is None:
            publisher = EventPublisher.from_settings(self.settings, listeners)
        else:
            for listener in listeners:
                publisher.subscribe(listener)
        self.publisher = publisher

        self.validation = ValidationPipeline(validators)
        if self.settings.max_xp_per_award > 0:
            self.validation.add_step(max_amount_step(self.settings.max_xp_per_award))

        self.achievements = AchievementService(
            db, self.publisher, enforce_type_restriction=self.settings.enforce_awardable_type_restriction
        )
        self.prizes = PrizeService(db, self.publisher)
        self.metric_levels = MetricLevelService(db, self.achievements, self.publisher)
        self.groups = MetricLevelGroupService(db, self.achievements, self.publisher)
        self.xp = XpService(db, self.publisher, self.metric_levels, self.groups)

        self.strategies: dict[str, GrantStrategy] = (
            dict(strategies)
            if strategies is not None
            else {"achievement": AchievementStrategy(self.achievements), "prize": PrizeStrategy(self.prizes)}
        )

    def register_strategy(self, kind: str, strategy: GrantStrategy) -> None:
        self.strategies[kind] = strategy

    # --- builders ----------------------------------------------------------

    def award(self, metric_slug: str) -> AwardXpBuilder:
        return AwardXpBuilder(self, metric_slug)

    def grant(self, slug: str) -> GrantBuilder:
        return GrantBuilder(self, slug)

    async def award_xp(
        self,
        awardable: Any,
        metric_slug: str,
        amount: int,
        reason: str | None = None,
        source: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> ProfileMetricSnapshot:
        """Direct XP award without the builder; business failures raise."""
        award = await self.xp.award_xp(AwardableRef.of(awardable), metric_slug, amount, reason, source, meta)
        return ProfileMetricSnapshot.model_validate(award.profile_metric)

    # --- reads -------------------------------------------------------------

    async def has_level(
        self,
        awardable: Any,
        level: int,
        metric: str | None = None,
        group: str | None = None,
    ) -> bool:
        """Whether the awardable has reached ``level`` in exactly one of a metric or group."""
        if metric is None and group is None:
            raise InvalidArgumentError("Either 'metric' or 'group' must be specified for has_level()")
        if metric is not None and group is not None:
            raise InvalidArgumentError("Only one of 'metric' or 'group' can be specified for has_level()")

        profile = await store.get_or_create_profile(self.db, AwardableRef.of(awardable))
        if metric is not None:
            return await self.metric_levels.has_reached_level(profile, metric, level)
        return await self.groups.has_reached_level(profile, group, level)  # type: ignore[arg-type]

    async def get_level_info(self, awardable: Any, group: str) -> LevelInfo:
        return await self.groups.get_level_info(AwardableRef.of(awardable), group)

    async def get_metric_level_info(self, awardable: Any, metric: str) -> LevelInfo:
        return await self.metric_levels.get_level_info(AwardableRef.of(awardable), metric)

    async def profile(self, awardable: Any) -> Profile:
        return await store.get_or_create_profile(self.db, AwardableRef.of(awardable))

    async def has_achievement(self, awardable: Any, slug: str) -> bool:
        return await has_achievement(self.db, AwardableRef.of(awardable), slug)

    async def leaderboard(
        self,
        by: str = "xp",
        metric: str | None = None,
        awardable_type: str | None = None,
        exclude_opted_out: bool = True,
        limit: int = 10,
    ) -> list[LeaderboardEntry]:
        """Rank profiles by total XP, achievement count, prize count or one metric's XP.

        ``"points"`` is accepted as an alias of ``"xp"``. Opted-out profiles
        are left out unless ``exclude_opted_out`` is False.
        """
        by = "xp" if by == "points" else by
        if by not in store.LEADERBOARD_COLUMNS:
            raise InvalidArgumentError(
                f"Unknown leaderboard ordering '{by}'",
                {"by": [f"Must be one of: {', '.join(store.LEADERBOARD_COLUMNS)}"]},
            )
        if metric is not None and by != "xp":
            raise InvalidArgumentError("A metric leaderboard can only be ordered by xp", {"by": ["Must be 'xp'"]})
        if limit <= 0:
            raise InvalidArgumentError("Leaderboard limit must be positive", {"limit": ["Must be greater than 0"]})

        rows = await store.top_profiles(
            self.db,
            by=by,
            metric=metric,
            awardable_type=awardable_type,
            exclude_opted_out=exclude_opted_out,
            limit=limit,
        )
        return [
            LeaderboardEntry(rank=rank, score=score, profile=ProfileSnapshot.model_validate(profile))
            for rank, (profile, score) in enumerate(rows, start=1)
        ]

    # --- builder support -----------------------------------------------------

    async def _detect_strategy(self, slug: str) -> tuple[str, GrantStrategy | None]:
        for kind, strategy in self.strategies.items():
            if await strategy.owns(slug):
                return kind, strategy
        return "grant", None

    async def _run_validation(self, context: ValidationContext) -> AwardResult | None:
        outcome = self.validation.validate(context)
        if outcome.valid:
            return None
        logger.info(
            "award_rejected",
            award_type=context.award_type,
            slug=context.slug,
            message=outcome.message,
        )
        return await self._fail(
            FunLabError(outcome.message or "Award validation failed", outcome.errors),
            context.awardable,
            context.award_type,
            context.slug or "",
            reason=FailureReason.REJECTED,
        )

    async def _fail(
        self,
        exc: FunLabError,
        recipient: AwardableRef,
        award_type: str,
        slug: str,
        reason: FailureReason | None = None,
    ) -> AwardResult:
        failure_reason = reason or exc.reason
        logger.info(
            "award_failed",
            award_type=award_type,
            slug=slug,
            reason=failure_reason.value,
            message=exc.message,
        )
        await self.publisher.publish(self.db, AwardFailed(
            awardable=recipient,
            award_type=award_type,
            slug=slug,
            failure_reason=failure_reason.value,
            message=exc.message,
            context={"errors": exc.errors},
        ))
        return AwardResult.failure(
            exc.message,
            reason=failure_reason,
            errors=exc.errors,
            recipient=recipient,
            type=award_type,
        )
