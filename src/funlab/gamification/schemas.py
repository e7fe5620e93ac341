"""Pydantic snapshots of engine state handed to callers."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class ProfileMetricSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    profile_id: int
    gamed_metric_id: int
    total_xp: int
    current_level: int


class ProfileSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    awardable_type: str
    awardable_id: int
    is_opted_in: bool
    total_xp: int
    achievement_count: int
    prize_count: int
    last_activity_at: datetime | None = None


class LeaderboardEntry(BaseModel):
    """One ranked row of a leaderboard; ``score`` is the value ranked on."""

    rank: int
    score: int
    profile: ProfileSnapshot


class LevelInfo(BaseModel):
    """Level summary for one metric or group."""

    current_level: int = 1
    total_xp: int = 0
    next_level_threshold: int | None = None
    progress_percentage: float = 0.0
