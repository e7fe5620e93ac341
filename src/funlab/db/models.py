"""ORM models for the gamification store.

Configuration tables (metrics, levels, groups, achievements, prizes) are
written by administrators. Runtime tables (profiles, profile metrics,
profile metric groups, grants) are written only by the award engine.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from funlab.db.base import Base, BigIntPK, JSONType


# ---------------------------------------------------------------------------
# Level <-> achievement links
# ---------------------------------------------------------------------------


achievement_metric_levels = Table(
    "achievement_metric_levels",
    Base.metadata,
    Column("achievement_id", Integer, ForeignKey("achievements.id", ondelete="CASCADE"), primary_key=True),
    Column("metric_level_id", Integer, ForeignKey("metric_levels.id", ondelete="CASCADE"), primary_key=True),
)

achievement_group_levels = Table(
    "achievement_metric_level_group_levels",
    Base.metadata,
    Column("achievement_id", Integer, ForeignKey("achievements.id", ondelete="CASCADE"), primary_key=True),
    Column(
        "metric_level_group_level_id",
        Integer,
        ForeignKey("metric_level_group_levels.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


# ---------------------------------------------------------------------------
# Configuration: metrics and levels
# ---------------------------------------------------------------------------


class GamedMetric(Base):
    """A named XP bucket, e.g. 'combat-xp'."""

    __tablename__ = "gamed_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    icon: Mapped[str | None] = mapped_column(String(128), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class MetricLevel(Base):
    """One threshold row of a metric's level ladder."""

    __tablename__ = "metric_levels"
    __table_args__ = (
        UniqueConstraint("gamed_metric_id", "level", name="uq_metric_levels_metric_level"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    gamed_metric_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("gamed_metrics.id", ondelete="CASCADE"), nullable=False, index=True
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    xp_threshold: Mapped[int] = mapped_column(BigInteger, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class MetricLevelGroup(Base):
    """A composite leveling track aggregating weighted XP of several metrics."""

    __tablename__ = "metric_level_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class MetricLevelGroupMetric(Base):
    """Membership of a metric in a group, with the weight applied to its XP."""

    __tablename__ = "metric_level_group_metrics"
    __table_args__ = (
        UniqueConstraint("metric_level_group_id", "gamed_metric_id", name="uq_group_metrics_group_metric"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    metric_level_group_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("metric_level_groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    gamed_metric_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("gamed_metrics.id", ondelete="CASCADE"), nullable=False, index=True
    )
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0, server_default="1.0")


class MetricLevelGroupLevel(Base):
    """One threshold row of a group's level ladder."""

    __tablename__ = "metric_level_group_levels"
    __table_args__ = (
        UniqueConstraint("metric_level_group_id", "level", name="uq_group_levels_group_level"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    metric_level_group_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("metric_level_groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    xp_threshold: Mapped[int] = mapped_column(BigInteger, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


# ---------------------------------------------------------------------------
# Configuration: achievements and prizes
# ---------------------------------------------------------------------------


class Achievement(Base):
    """A one-time unlockable; at most one grant per (achievement, awardable)."""

    __tablename__ = "achievements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    icon: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # None means the achievement can go to any awardable type
    awardable_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    def applies_to(self, awardable_type: str) -> bool:
        return self.awardable_type is None or self.awardable_type == awardable_type


class Prize(Base):
    """A grantable reward with optional limited inventory."""

    __tablename__ = "prizes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="virtual", server_default="virtual")
    cost_in_points: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    # None means unlimited
    inventory_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# ---------------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------------


class Profile(Base):
    """Per-awardable gamification summary with denormalized counters."""

    __tablename__ = "profiles"
    __table_args__ = (
        UniqueConstraint("awardable_type", "awardable_id", name="uq_profiles_awardable"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    awardable_type: Mapped[str] = mapped_column(String(128), nullable=False)
    awardable_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_opted_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    total_xp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0", index=True)
    achievement_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    prize_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    def is_opted_out(self) -> bool:
        return not self.is_opted_in


class ProfileMetric(Base):
    """Accumulated XP and cached level of one profile in one metric."""

    __tablename__ = "profile_metrics"
    __table_args__ = (
        UniqueConstraint("profile_id", "gamed_metric_id", name="uq_profile_metrics_profile_metric"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    profile_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    gamed_metric_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("gamed_metrics.id", ondelete="CASCADE"), nullable=False, index=True
    )
    total_xp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    current_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ProfileMetricGroup(Base):
    """Cached level of one profile in one metric level group."""

    __tablename__ = "profile_metric_groups"
    __table_args__ = (
        UniqueConstraint("profile_id", "metric_level_group_id", name="uq_profile_metric_groups_profile_group"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    profile_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    metric_level_group_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("metric_level_groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    current_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AchievementGrant(Base):
    """An awarded achievement. UNIQUE(achievement, awardable) prevents duplicates."""

    __tablename__ = "achievement_grants"
    __table_args__ = (
        UniqueConstraint(
            "achievement_id", "awardable_type", "awardable_id", name="uq_achievement_grants_achievement_awardable"
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    achievement_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("achievements.id", ondelete="CASCADE"), nullable=False
    )
    profile_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    awardable_type: Mapped[str] = mapped_column(String(128), nullable=False)
    awardable_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    source: Mapped[str | None] = mapped_column(String(128), nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    achievement: Mapped[Achievement] = relationship("Achievement", lazy="joined")


class PrizeGrant(Base):
    """An awarded prize. Prizes are repeatable; inventory caps the total."""

    __tablename__ = "prize_grants"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    prize_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("prizes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    profile_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    awardable_type: Mapped[str] = mapped_column(String(128), nullable=False)
    awardable_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    source: Mapped[str | None] = mapped_column(String(128), nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="granted", server_default="granted")
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    prize: Mapped[Prize] = relationship("Prize", lazy="joined")


class EventLog(Base):
    """Append-only record of published engine events."""

    __tablename__ = "event_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    awardable_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    awardable_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
