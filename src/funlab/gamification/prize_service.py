"""Prize grants: repeatable rewards limited only by inventory."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from funlab.db.models import Prize, PrizeGrant
from funlab.gamification import store
from funlab.gamification.awardable import AwardableRef
from funlab.gamification.errors import InvalidStateError, NotFoundError, OptedOutError
from funlab.gamification.events import EventPublisher, PrizeAwarded

logger = structlog.get_logger()


class PrizeType(str, Enum):
    VIRTUAL = "virtual"
    PHYSICAL = "physical"
    FEATURE_UNLOCK = "feature_unlock"
    CUSTOM = "custom"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    CLAIMED = "claimed"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


async def remaining_inventory(db: AsyncSession, prize: Prize) -> int | None:
    """Units left to grant, or None when the prize is unlimited."""
    if prize.inventory_quantity is None:
        return None
    used = await store.count_active_prize_grants(db, prize.id)
    return max(prize.inventory_quantity - used, 0)


class PrizeService:
    def __init__(self, db: AsyncSession, publisher: EventPublisher) -> None:
        self.db = db
        self.publisher = publisher

    async def exists(self, slug: str) -> bool:
        return await store.get_prize_by_slug(self.db, slug) is not None

    async def grant(
        self,
        awardable: AwardableRef,
        prize: str | Prize,
        reason: str | None = None,
        source: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> PrizeGrant:
        """Grant a prize.

        Checks, in order: opt-out, existence, active flag, inventory. There is
        no duplicate check; the same prize can be granted repeatedly.
        """
        profile = await store.get_profile(self.db, awardable)
        if profile is not None and profile.is_opted_out():
            raise OptedOutError("Recipient has opted out of gamification")

        if isinstance(prize, str):
            slug = prize
            found = await store.get_prize_by_slug(self.db, slug)
            if found is None:
                raise NotFoundError(f"Prize '{slug}' not found", {"slug": [f"Unknown prize '{slug}'"]})
            prize = found

        if not prize.is_active:
            raise InvalidStateError(f"Prize '{prize.slug}' is not active")

        if await remaining_inventory(self.db, prize) == 0:
            raise InvalidStateError(
                f"Prize '{prize.slug}' is out of inventory",
                {"inventory": ["No units left"]},
            )

        if profile is None:
            profile = await store.get_or_create_profile(self.db, awardable)

        grant = PrizeGrant(
            prize_id=prize.id,
            profile_id=profile.id,
            awardable_type=awardable.type,
            awardable_id=awardable.id,
            reason=reason,
            source=source,
            meta=meta or None,
            status=RedemptionStatus.GRANTED.value,
            granted_at=datetime.now(timezone.utc),
        )
        self.db.add(grant)
        await self.db.flush()

        await store.increment_prize_count(self.db, profile)

        logger.info("prize_granted", prize=prize.slug, awardable=str(awardable), source=source)
        await self.publisher.publish(self.db, PrizeAwarded(
            awardable=awardable,
            prize_slug=prize.slug,
            grant_id=grant.id,
            reason=reason,
            source=source,
            meta=meta or {},
        ))
        return grant
