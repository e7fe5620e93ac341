"""Award engine tables.

Creates the configuration tables (gamed_metrics, metric_levels,
metric_level_groups, metric_level_group_metrics, metric_level_group_levels,
achievements, prizes and the level/achievement link tables) and the runtime
tables (profiles, profile_metrics, profile_metric_groups,
achievement_grants, prize_grants, event_logs).

Revision ID: 001_funlab_tables
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_funlab_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Gamed Metrics ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS gamed_metrics (
            id SERIAL PRIMARY KEY,
            slug VARCHAR(128) UNIQUE NOT NULL,
            name VARCHAR(255) NOT NULL,
            description TEXT,
            icon VARCHAR(128),
            active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Metric Levels ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS metric_levels (
            id SERIAL PRIMARY KEY,
            gamed_metric_id INTEGER NOT NULL REFERENCES gamed_metrics(id) ON DELETE CASCADE,
            level INTEGER NOT NULL,
            xp_threshold BIGINT NOT NULL,
            name VARCHAR(255) NOT NULL,
            description TEXT,
            CONSTRAINT uq_metric_levels_metric_level UNIQUE (gamed_metric_id, level)
        )
    """)

    # --- Metric Level Groups ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS metric_level_groups (
            id SERIAL PRIMARY KEY,
            slug VARCHAR(128) UNIQUE NOT NULL,
            name VARCHAR(255) NOT NULL,
            description TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS metric_level_group_metrics (
            id SERIAL PRIMARY KEY,
            metric_level_group_id INTEGER NOT NULL REFERENCES metric_level_groups(id) ON DELETE CASCADE,
            gamed_metric_id INTEGER NOT NULL REFERENCES gamed_metrics(id) ON DELETE CASCADE,
            weight DOUBLE PRECISION NOT NULL DEFAULT 1.0,
            CONSTRAINT uq_group_metrics_group_metric UNIQUE (metric_level_group_id, gamed_metric_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_group_metrics_metric
        ON metric_level_group_metrics(gamed_metric_id)
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS metric_level_group_levels (
            id SERIAL PRIMARY KEY,
            metric_level_group_id INTEGER NOT NULL REFERENCES metric_level_groups(id) ON DELETE CASCADE,
            level INTEGER NOT NULL,
            xp_threshold BIGINT NOT NULL,
            name VARCHAR(255) NOT NULL,
            description TEXT,
            CONSTRAINT uq_group_levels_group_level UNIQUE (metric_level_group_id, level)
        )
    """)

    # --- Achievements & Prizes ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievements (
            id SERIAL PRIMARY KEY,
            slug VARCHAR(128) UNIQUE NOT NULL,
            name VARCHAR(255) NOT NULL,
            description TEXT,
            icon VARCHAR(128),
            awardable_type VARCHAR(128),
            meta JSONB,
            is_active BOOLEAN NOT NULL DEFAULT true,
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS prizes (
            id SERIAL PRIMARY KEY,
            slug VARCHAR(128) UNIQUE NOT NULL,
            name VARCHAR(255) NOT NULL,
            description TEXT,
            type VARCHAR(32) NOT NULL DEFAULT 'virtual',
            cost_in_points NUMERIC(12, 2) NOT NULL DEFAULT 0,
            inventory_quantity INTEGER,
            meta JSONB,
            is_active BOOLEAN NOT NULL DEFAULT true,
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievement_metric_levels (
            achievement_id INTEGER NOT NULL REFERENCES achievements(id) ON DELETE CASCADE,
            metric_level_id INTEGER NOT NULL REFERENCES metric_levels(id) ON DELETE CASCADE,
            PRIMARY KEY (achievement_id, metric_level_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievement_metric_level_group_levels (
            achievement_id INTEGER NOT NULL REFERENCES achievements(id) ON DELETE CASCADE,
            metric_level_group_level_id INTEGER NOT NULL
                REFERENCES metric_level_group_levels(id) ON DELETE CASCADE,
            PRIMARY KEY (achievement_id, metric_level_group_level_id)
        )
    """)

    # --- Profiles ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS profiles (
            id BIGSERIAL PRIMARY KEY,
            awardable_type VARCHAR(128) NOT NULL,
            awardable_id BIGINT NOT NULL,
            is_opted_in BOOLEAN NOT NULL DEFAULT true,
            total_xp BIGINT NOT NULL DEFAULT 0,
            achievement_count INTEGER NOT NULL DEFAULT 0,
            prize_count INTEGER NOT NULL DEFAULT 0,
            last_activity_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_profiles_awardable UNIQUE (awardable_type, awardable_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_profiles_total_xp
        ON profiles(total_xp DESC)
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS profile_metrics (
            id BIGSERIAL PRIMARY KEY,
            profile_id BIGINT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
            gamed_metric_id INTEGER NOT NULL REFERENCES gamed_metrics(id) ON DELETE CASCADE,
            total_xp BIGINT NOT NULL DEFAULT 0,
            current_level INTEGER NOT NULL DEFAULT 1,
            updated_at TIMESTAMPTZ,
            CONSTRAINT uq_profile_metrics_profile_metric UNIQUE (profile_id, gamed_metric_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS profile_metric_groups (
            id BIGSERIAL PRIMARY KEY,
            profile_id BIGINT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
            metric_level_group_id INTEGER NOT NULL REFERENCES metric_level_groups(id) ON DELETE CASCADE,
            current_level INTEGER NOT NULL DEFAULT 1,
            updated_at TIMESTAMPTZ,
            CONSTRAINT uq_profile_metric_groups_profile_group UNIQUE (profile_id, metric_level_group_id)
        )
    """)

    # --- Grants ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievement_grants (
            id BIGSERIAL PRIMARY KEY,
            achievement_id INTEGER NOT NULL REFERENCES achievements(id) ON DELETE CASCADE,
            profile_id BIGINT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
            awardable_type VARCHAR(128) NOT NULL,
            awardable_id BIGINT NOT NULL,
            reason VARCHAR(512),
            source VARCHAR(128),
            meta JSONB,
            granted_at TIMESTAMPTZ NOT NULL,
            CONSTRAINT uq_achievement_grants_achievement_awardable
                UNIQUE (achievement_id, awardable_type, awardable_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_achievement_grants_granted_at
        ON achievement_grants(granted_at DESC)
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS prize_grants (
            id BIGSERIAL PRIMARY KEY,
            prize_id INTEGER NOT NULL REFERENCES prizes(id) ON DELETE CASCADE,
            profile_id BIGINT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
            awardable_type VARCHAR(128) NOT NULL,
            awardable_id BIGINT NOT NULL,
            reason VARCHAR(512),
            source VARCHAR(128),
            meta JSONB,
            status VARCHAR(16) NOT NULL DEFAULT 'granted',
            granted_at TIMESTAMPTZ NOT NULL
        )
    """)

    # --- Event Log ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS event_logs (
            id BIGSERIAL PRIMARY KEY,
            event_type VARCHAR(64) NOT NULL,
            awardable_type VARCHAR(128),
            awardable_id BIGINT,
            payload JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_event_logs_type
        ON event_logs(event_type)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS event_logs CASCADE")
    op.execute("DROP TABLE IF EXISTS prize_grants CASCADE")
    op.execute("DROP TABLE IF EXISTS achievement_grants CASCADE")
    op.execute("DROP TABLE IF EXISTS profile_metric_groups CASCADE")
    op.execute("DROP TABLE IF EXISTS profile_metrics CASCADE")
    op.execute("DROP TABLE IF EXISTS profiles CASCADE")
    op.execute("DROP TABLE IF EXISTS achievement_metric_level_group_levels CASCADE")
    op.execute("DROP TABLE IF EXISTS achievement_metric_levels CASCADE")
    op.execute("DROP TABLE IF EXISTS prizes CASCADE")
    op.execute("DROP TABLE IF EXISTS achievements CASCADE")
    op.execute("DROP TABLE IF EXISTS metric_level_group_levels CASCADE")
    op.execute("DROP TABLE IF EXISTS metric_level_group_metrics CASCADE")
    op.execute("DROP TABLE IF EXISTS metric_level_groups CASCADE")
    op.execute("DROP TABLE IF EXISTS metric_levels CASCADE")
    op.execute("DROP TABLE IF EXISTS gamed_metrics CASCADE")
